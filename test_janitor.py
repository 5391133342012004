import asyncio
import os
import threading
import unittest
from datetime import timedelta
from unittest.mock import patch

from database import Account
from errors import StoreError
from janitor import ReconciliationJanitor, SingleFlightScheduler
from ledger import AccountLedger, AccountRecord
from servers import ServerDirectory
from test_ledger import DAY_MS, T0, add_legacy_account, temp_database


class TestReconciliationJanitor(unittest.TestCase):
    def setUp(self):
        self.db, self.path = temp_database()
        self.ledger = AccountLedger(self.db, clock=lambda: T0)
        self.servers = ServerDirectory(self.db)
        self.janitor = ReconciliationJanitor(self.ledger, self.servers, grace=timedelta(days=3))

    def tearDown(self):
        self.db.dispose()
        os.remove(self.path)

    def accounts(self):
        session = self.db.Session()
        try:
            return {a.id: a for a in session.query(Account).all()}
        finally:
            session.close()

    def test_purge_uses_grace_window(self):
        for name, expiry in [('a', T0 - 4 * DAY_MS), ('b', T0 - 2 * DAY_MS), ('c', None)]:
            self.ledger.upsert(AccountRecord(1, 'vmess', name, server_id=1, expires_at=expiry))

        self.assertEqual(self.janitor.purge_expired(now=T0), 1)
        self.assertEqual(sorted(a.username for a in self.accounts().values()), ['b', 'c'])
        self.assertEqual(self.janitor.purge_expired(now=T0), 0)

    def test_backfill_links_legacy_rows(self):
        sg = self.servers.add_server('sg1.example.com', 'tok', 'SG Premium')
        bare = self.servers.add_server('id1.example.com', 'tok', None)

        named = add_legacy_account(self.db, username='a', domain=' SG1.EXAMPLE.COM ')
        keep_name = add_legacy_account(self.db, username='b', domain='sg1.example.com',
                                       server_id=0, server_name='Old label')
        fallback = add_legacy_account(self.db, username='c', domain='id1.example.com')
        orphan = add_legacy_account(self.db, username='d', domain='gone.example.com')
        add_legacy_account(self.db, username='e', domain='')

        result = self.janitor.backfill_server_links()
        self.assertEqual(result, {"updated": 3, "total": 4, "failed": 0})

        rows = self.accounts()
        self.assertEqual(rows[named].server_id, sg)
        self.assertEqual(rows[named].server_name, 'SG Premium')
        self.assertEqual(rows[keep_name].server_id, sg)
        self.assertEqual(rows[keep_name].server_name, 'Old label')
        self.assertEqual(rows[fallback].server_id, bare)
        self.assertEqual(rows[fallback].server_name, 'id1.example.com')
        self.assertIsNone(rows[orphan].server_id)

    def test_backfill_is_idempotent_and_never_relinks(self):
        sg = self.servers.add_server('sg1.example.com', 'tok', 'SG')
        add_legacy_account(self.db, username='a', domain='sg1.example.com')
        linked = add_legacy_account(self.db, username='b', domain='sg1.example.com', server_id=42)

        self.janitor.backfill_server_links()
        first = {i: (a.server_id, a.server_name) for i, a in self.accounts().items()}
        again = self.janitor.backfill_server_links()
        second = {i: (a.server_id, a.server_name) for i, a in self.accounts().items()}

        self.assertEqual(again, {"updated": 0, "total": 0, "failed": 0})
        self.assertEqual(first, second)
        self.assertEqual(second[linked][0], 42)
        self.assertIn((sg, 'SG'), second.values())

    def test_backfill_continues_after_row_failure(self):
        sg = self.servers.add_server('sg1.example.com', 'tok', 'SG')
        add_legacy_account(self.db, username='a', domain='broken.example.com')
        ok = add_legacy_account(self.db, username='b', domain='sg1.example.com')

        real_find = self.servers.find_by_domain

        def find(domain):
            if domain.startswith('broken'):
                raise StoreError("lookup failed")
            return real_find(domain)

        with patch.object(self.servers, 'find_by_domain', side_effect=find):
            result = self.janitor.backfill_server_links()

        self.assertEqual(result, {"updated": 1, "total": 2, "failed": 1})
        self.assertEqual(self.accounts()[ok].server_id, sg)

    def test_run_once_backfills_when_purge_fails(self):
        sg = self.servers.add_server('sg1.example.com', 'tok', 'SG')
        legacy = add_legacy_account(self.db, username='a', domain='sg1.example.com')

        with patch.object(self.ledger, 'delete_expired', side_effect=StoreError("database is locked")):
            result = self.janitor.run_once()

        self.assertIsNone(result["purged"])
        self.assertEqual(result["updated"], 1)
        self.assertEqual(self.accounts()[legacy].server_id, sg)

    def test_run_once_purges_when_backfill_fails(self):
        self.ledger.upsert(AccountRecord(1, 'vmess', 'old', server_id=1, expires_at=1))

        with patch.object(self.ledger, 'legacy_candidates', side_effect=StoreError("database is locked")):
            result = self.janitor.run_once()

        self.assertEqual(result["purged"], 1)
        self.assertIsNone(result["updated"])
        self.assertEqual(self.accounts(), {})


class TestSingleFlightScheduler(unittest.IsolatedAsyncioTestCase):
    async def test_overlapping_tick_is_skipped(self):
        release = threading.Event()
        runs = []

        def job():
            runs.append(1)
            release.wait(5)
            return len(runs)

        scheduler = SingleFlightScheduler(job, interval=3600)
        self.assertTrue(scheduler.tick())
        await asyncio.sleep(0.05)
        self.assertFalse(scheduler.tick())
        self.assertEqual(scheduler.skipped, 1)

        release.set()
        await scheduler.wait_idle()
        self.assertFalse(scheduler.busy)
        self.assertTrue(scheduler.tick())
        await scheduler.wait_idle()
        self.assertEqual(len(runs), 2)

    async def test_job_errors_are_contained(self):
        def job():
            raise StoreError("database is locked")

        scheduler = SingleFlightScheduler(job, interval=3600)
        scheduler.tick()
        await scheduler.wait_idle()
        self.assertTrue(scheduler.tick())
        await scheduler.wait_idle()

    async def test_manual_job_shares_single_flight_guard(self):
        release = threading.Event()
        manual = []

        def scheduled():
            release.wait(5)
            return "scheduled"

        def backfill():
            manual.append(1)
            return {"updated": 2}

        scheduler = SingleFlightScheduler(scheduled, interval=3600)
        self.assertTrue(scheduler.tick())
        await asyncio.sleep(0.05)
        self.assertFalse(scheduler.tick(backfill))
        self.assertEqual(manual, [])

        release.set()
        self.assertEqual(await scheduler.wait_idle(), "scheduled")
        self.assertTrue(scheduler.tick(backfill))
        self.assertEqual(await scheduler.wait_idle(), {"updated": 2})
        self.assertEqual(manual, [1])

    async def test_start_and_stop(self):
        calls = []
        scheduler = SingleFlightScheduler(lambda: calls.append(1), interval=3600)
        scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()
        self.assertEqual(calls, [1])


if __name__ == '__main__':
    unittest.main()
