import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Optional

from access import AccessPolicy, ResellerRegistry
from backend import ProvisionBackend, ProvisionResult, validate_username
from config import PROTOCOLS, PROVISION_SETTINGS
from database import Account
from errors import InvalidInputError, StoreError
from ledger import AccountIdentity, AccountLedger, AccountRecord, now_ms
from servers import ServerDirectory
from trial import TrialRateLimiter

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


@dataclass
class ProvisionOutcome:
    ok: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    account: Optional[Account] = None
    result: Optional[ProvisionResult] = None


class ProvisioningService:
    """Server lookup, access check, panel call, then ledger write.

    The ledger is only written after the panel confirms success, and no
    ledger lock is held while the panel call is in flight.
    """

    def __init__(self, servers: ServerDirectory, policy: AccessPolicy, ledger: AccountLedger,
                 backend: ProvisionBackend, trials: TrialRateLimiter, resellers: ResellerRegistry,
                 timeout: float = PROVISION_SETTINGS["request_timeout"], clock=now_ms):
        self.servers = servers
        self.policy = policy
        self.ledger = ledger
        self.backend = backend
        self.trials = trials
        self.resellers = resellers
        self.timeout = timeout
        self.clock = clock

    async def create(self, user_id, protocol, username, server_id, days,
                     password=None, quota=0, ip_limit=0) -> ProvisionOutcome:
        server, denied = self._prepare(user_id, protocol, username, server_id)
        if denied:
            return denied

        identity = AccountIdentity(user_id, protocol, username, server.id, server.domain)
        params = {"days": days, "quota": quota, "ip_limit": ip_limit, "password": password}
        result = await self._call(self.backend.create, identity, params, server)
        if not result.success:
            return ProvisionOutcome(False, 'backend_failure', result.error_message, result=result)

        expires_at = self.clock() + days * DAY_MS
        return self._record(identity, server, result, expires_at, password or result.data.get('password'))

    async def renew(self, user_id, protocol, username, server_id, days,
                    quota=0, ip_limit=0, expires_at=None) -> ProvisionOutcome:
        """Extend an account; without an explicit expiry the new one builds on the current expiry"""
        server, denied = self._prepare(user_id, protocol, username, server_id)
        if denied:
            return denied

        identity = AccountIdentity(user_id, protocol, username, server.id, server.domain)
        try:
            previous = self.ledger.find(identity)
        except StoreError as e:
            return ProvisionOutcome(False, 'store_failure', str(e))

        params = {"days": days, "quota": quota, "ip_limit": ip_limit}
        result = await self._call(self.backend.renew, identity, params, server)
        if not result.success:
            return ProvisionOutcome(False, 'backend_failure', result.error_message, result=result)

        if expires_at is None:
            now = self.clock()
            try:
                current = self.ledger.get_existing_expiry(user_id, protocol, username, server.id, server.domain)
            except StoreError as e:
                return ProvisionOutcome(False, 'store_failure', str(e), result=result)
            base = current if current and current > now else now
            expires_at = base + days * DAY_MS

        password = previous.password if previous is not None else None
        links = None if result.connection_links else (previous.links if previous is not None else None)
        return self._record(identity, server, result, expires_at, password, links)

    async def delete(self, user_id, protocol, username, server_id) -> ProvisionOutcome:
        server, denied = self._prepare(user_id, protocol, username, server_id)
        if denied:
            return denied

        identity = AccountIdentity(user_id, protocol, username, server.id, server.domain)
        result = await self._call(self.backend.delete, identity, {}, server)
        if not result.success:
            return ProvisionOutcome(False, 'backend_failure', result.error_message, result=result)

        try:
            removed = self.ledger.delete_account(identity)
        except StoreError as e:
            return ProvisionOutcome(False, 'store_failure', str(e), result=result)
        logger.info(f"Deleted {protocol} account {username} on server {server.id} ({removed} ledger rows)")
        return ProvisionOutcome(True, result=result)

    async def trial(self, user_id, protocol, server_id) -> ProvisionOutcome:
        try:
            is_reseller = self.resellers.is_user_reseller(user_id)
        except Exception as e:
            logger.warning(f"Reseller check failed for trial of user {user_id}: {e}")
            is_reseller = False

        allowed, reason = self.trials.can_start_trial(user_id, is_reseller)
        if not allowed:
            return ProvisionOutcome(False, reason)

        username = f"trial{random.randint(1000, 9999)}"
        server, denied = self._prepare(user_id, protocol, username, server_id)
        if denied:
            return denied

        days = self.trials.settings.current.trial_days
        identity = AccountIdentity(user_id, protocol, username, server.id, server.domain)
        params = {
            "days": days,
            "quota": PROVISION_SETTINGS["trial_quota"],
            "ip_limit": PROVISION_SETTINGS["trial_ip_limit"]
        }
        result = await self._call(self.backend.trial, identity, params, server)
        if not result.success:
            return ProvisionOutcome(False, 'backend_failure', result.error_message, result=result)

        outcome = self._record(identity, server, result, self.clock() + days * DAY_MS,
                               result.data.get('password'))
        if outcome.ok:
            try:
                self.trials.record_trial_used(user_id)
            except StoreError as e:
                logger.error(f"Trial granted to {user_id} but not recorded: {e}")
        return outcome

    def _prepare(self, user_id, protocol, username, server_id):
        if protocol not in PROTOCOLS:
            return None, ProvisionOutcome(False, 'invalid', f"unknown protocol {protocol}")
        try:
            validate_username(username)
        except InvalidInputError as e:
            return None, ProvisionOutcome(False, 'invalid', str(e))

        decision = self.policy.check_server_access(server_id, user_id)
        if not decision.ok:
            return None, ProvisionOutcome(False, decision.reason)
        try:
            server = self.servers.get_by_id(server_id)
        except StoreError as e:
            return None, ProvisionOutcome(False, 'store_failure', str(e))
        if server is None:
            return None, ProvisionOutcome(False, 'not_found')
        return server, None

    async def _call(self, action, identity, params, server) -> ProvisionResult:
        try:
            return await asyncio.wait_for(action(identity, params, server), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Panel call for {identity.username} on {server.domain} timed out")
            return ProvisionResult.failure("server did not respond in time")

    def _record(self, identity, server, result, expires_at, password, links=None) -> ProvisionOutcome:
        record = AccountRecord(
            user_id=identity.user_id,
            protocol_type=identity.protocol_type,
            username=identity.username,
            password=password,
            server_id=server.id,
            server_name=server.display_name or server.domain,
            domain=server.domain,
            connection_links=result.connection_links or links,
            expires_at=expires_at
        )
        try:
            account = self.ledger.upsert(record)
        except StoreError as e:
            return ProvisionOutcome(False, 'store_failure', str(e), result=result)
        return ProvisionOutcome(True, account=account, result=result)
