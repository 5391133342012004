import asyncio
import logging
from datetime import timedelta
from typing import Optional

from config import JANITOR_SETTINGS
from ledger import AccountLedger, now_ms
from servers import ServerDirectory

logger = logging.getLogger(__name__)


class ReconciliationJanitor:
    """Purges long-expired ledger rows and links legacy rows to servers"""

    def __init__(self, ledger: AccountLedger, servers: ServerDirectory,
                 grace: timedelta = timedelta(days=JANITOR_SETTINGS["expired_grace_days"])):
        self.ledger = ledger
        self.servers = servers
        self.grace = grace

    def purge_expired(self, now: Optional[int] = None) -> int:
        if now is None:
            now = now_ms()
        cutoff = now - int(self.grace.total_seconds() * 1000)
        deleted = self.ledger.delete_expired(cutoff)
        if deleted:
            logger.info(f"Purged {deleted} accounts expired before {cutoff}")
        return deleted

    def backfill_server_links(self) -> dict:
        """Link domain-only accounts to the server owning that domain.

        Rows whose domain matches no server are left untouched. A failing row
        is logged and counted in ``failed``; the sweep continues.
        """
        candidates = self.ledger.legacy_candidates()
        updated = failed = 0
        for account in candidates:
            try:
                server = self.servers.find_by_domain(account.domain)
                if server is None:
                    continue
                if self.ledger.link_server(account.id, server):
                    updated += 1
            except Exception as e:
                failed += 1
                logger.error(f"Backfill failed for account {account.id} ({account.domain}): {e}")

        if candidates:
            logger.info(f"Backfill linked {updated}/{len(candidates)} legacy accounts ({failed} failed)")
        return {"updated": updated, "total": len(candidates), "failed": failed}

    def run_once(self) -> dict:
        """Run both sweeps; a failing sweep is logged and reported as None"""
        try:
            purged = self.purge_expired()
        except Exception as e:
            logger.error(f"Expired purge failed: {e}")
            purged = None

        try:
            counts = self.backfill_server_links()
        except Exception as e:
            logger.error(f"Server backfill failed: {e}")
            counts = {"updated": None, "total": None, "failed": None}
        return {"purged": purged, **counts}


class SingleFlightScheduler:
    """Runs a blocking job every ``interval`` seconds, never overlapping itself.

    A tick that arrives while the previous run is still in progress is
    skipped.
    """

    def __init__(self, job, interval: float = JANITOR_SETTINGS["interval_seconds"], name: str = "janitor"):
        self.job = job
        self.interval = interval
        self.name = name
        self.skipped = 0
        self._running: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def busy(self) -> bool:
        return self._running is not None and not self._running.done()

    def tick(self, job=None) -> bool:
        """Start a run unless one is in flight; returns whether it started.

        ``job`` replaces the scheduled job for this run only and shares the
        same single-flight guard.
        """
        if self.busy:
            self.skipped += 1
            logger.warning(f"{self.name} still running, skipping this tick")
            return False
        self._running = asyncio.create_task(self._run(job or self.job))
        return True

    async def _run(self, job):
        try:
            result = await asyncio.to_thread(job)
            logger.info(f"{self.name} finished: {result}")
            return result
        except Exception as e:
            logger.error(f"Error in {self.name}: {e}")

    async def _loop(self):
        while True:
            self.tick()
            await asyncio.sleep(self.interval)

    def start(self):
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._loop())
        return self._loop_task

    async def stop(self):
        for task in (self._loop_task, self._running):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._running = None

    async def wait_idle(self):
        """Wait for the current run and return its result"""
        if self._running is not None:
            return await asyncio.shield(self._running)
