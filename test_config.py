import json
import os
import tempfile
import unittest

from config import ResellerTerms, Settings, SettingsStore, parse_settings


class TestSettingsStore(unittest.TestCase):
    def setUp(self):
        fd, self.path = tempfile.mkstemp(suffix='.json')
        os.close(fd)

    def tearDown(self):
        if os.path.exists(self.path):
            os.remove(self.path)

    def write(self, content):
        with open(self.path, 'w') as f:
            f.write(content)

    def test_reload_swaps_snapshot(self):
        store = SettingsStore(self.path)
        before = store.current
        self.write(json.dumps({
            "reseller_terms": {"min_accounts": 10, "min_topup_amount": 50000},
            "trial_enabled": False
        }))

        after = store.reload()
        self.assertIs(store.current, after)
        self.assertEqual(after.reseller_terms, ResellerTerms(10, 50000))
        self.assertFalse(after.trial_enabled)
        self.assertTrue(before.trial_enabled)

    def test_bad_file_keeps_previous(self):
        initial = Settings(trial_enabled=False)
        store = SettingsStore(self.path, initial)
        self.write('{not json')
        self.assertIs(store.reload(), initial)

        os.remove(self.path)
        self.assertIs(store.reload(), initial)

    def test_defaults(self):
        settings = parse_settings({})
        self.assertEqual(settings.reseller_terms, ResellerTerms())
        self.assertTrue(settings.trial_enabled)


if __name__ == '__main__':
    unittest.main()
