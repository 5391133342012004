import json
import os
import tempfile
import unittest

from access import ResellerRegistry
from config import Settings, SettingsStore
from init_db import import_legacy_resellers, import_legacy_trials
from trial import TrialRateLimiter
from test_ledger import temp_database


class TestLegacyImport(unittest.TestCase):
    def setUp(self):
        self.db, self.path = temp_database()
        self.dir = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.db.dispose()
        os.remove(self.path)
        self.dir.cleanup()

    def test_import_resellers(self):
        path = os.path.join(self.dir.name, 'ressel.db')
        with open(path, 'w') as f:
            f.write("111\n222\n\n  333  \nnot-an-id\n111\n")

        self.assertEqual(import_legacy_resellers(self.db, path), 3)
        self.assertEqual(sorted(ResellerRegistry(self.db).list_resellers()), [111, 222, 333])

    def test_import_trials(self):
        path = os.path.join(self.dir.name, 'trial.db')
        with open(path, 'w') as f:
            json.dump({"111": "2026-10-17", "222": "2026-10-16", "bad": "2026-10-17"}, f)

        self.assertEqual(import_legacy_trials(self.db, path), 2)
        trials = TrialRateLimiter(self.db, SettingsStore(os.devnull, Settings()), today=lambda: '2026-10-17')
        self.assertTrue(trials.has_used_trial_today(111))
        self.assertFalse(trials.has_used_trial_today(222))

    def test_missing_files(self):
        missing = os.path.join(self.dir.name, 'nope')
        self.assertEqual(import_legacy_resellers(self.db, missing), 0)
        self.assertEqual(import_legacy_trials(self.db, missing), 0)


if __name__ == '__main__':
    unittest.main()
