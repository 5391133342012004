import json
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import and_, or_, func, false
from sqlalchemy.exc import SQLAlchemyError

from config import PROTOCOLS
from database import Database, Account
from errors import InvalidInputError, StoreError
from servers import normalize_domain

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def _has_server(server_id) -> bool:
    return server_id is not None and server_id != 0


@dataclass(frozen=True)
class AccountIdentity:
    """Identifies one logical account across provision/renew/delete calls.

    ``server_id`` of None or 0 marks a legacy reference that is matched by
    normalized domain only.
    """
    user_id: int
    protocol_type: str
    username: str
    server_id: Optional[int] = None
    domain: Optional[str] = None

    @property
    def lock_key(self):
        return (self.user_id, self.protocol_type, self.username)

    def clause(self):
        """SQL filter selecting every row this identity matches"""
        alternatives = []
        if _has_server(self.server_id):
            alternatives.append(Account.server_id == self.server_id)
        domain = normalize_domain(self.domain)
        if domain:
            alternatives.append(and_(
                or_(Account.server_id.is_(None), Account.server_id == 0),
                func.lower(func.trim(Account.domain)) == domain
            ))
        if not alternatives:
            # nothing to match a server by
            return false()

        return and_(
            Account.user_id == self.user_id,
            Account.protocol_type == self.protocol_type,
            Account.username == self.username,
            or_(*alternatives)
        )

    def matches(self, account) -> bool:
        if (account.user_id, account.protocol_type, account.username) != self.lock_key:
            return False
        if _has_server(self.server_id) and account.server_id == self.server_id:
            return True
        domain = normalize_domain(self.domain)
        return bool(domain) and not _has_server(account.server_id) \
            and normalize_domain(account.domain) == domain


@dataclass
class AccountRecord:
    """Candidate account payload handed to AccountLedger.upsert"""
    user_id: int
    protocol_type: str
    username: str
    password: Optional[str] = None
    server_id: Optional[int] = None
    server_name: Optional[str] = None
    domain: Optional[str] = None
    connection_links: Optional[List[str]] = field(default=None)
    expires_at: Optional[int] = None

    @property
    def identity(self) -> AccountIdentity:
        return AccountIdentity(self.user_id, self.protocol_type, self.username,
                               self.server_id, self.domain)


class KeyedLock:
    """One mutex per key, dropped once nobody holds or waits on it"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class AccountLedger:
    """Local record of every account provisioned on the panels"""

    def __init__(self, db: Database, clock=now_ms):
        self.db = db
        self.clock = clock
        self._locks = KeyedLock()

    def upsert(self, record: AccountRecord) -> Account:
        """Insert the account or refresh the existing row for its identity.

        The creation time of an existing row is kept. A failure while looking
        up the match raises StoreError; it never turns into an insert.
        """
        if record.protocol_type not in PROTOCOLS:
            raise InvalidInputError(f"unknown protocol {record.protocol_type!r}")

        identity = record.identity
        links = json.dumps(record.connection_links) if record.connection_links is not None else None

        with self._locks.hold(identity.lock_key):
            session = self.db.Session()
            try:
                matches = self._matches(session, identity)
                existing = matches[0] if matches else None
                now = self.clock()
                if existing is not None:
                    # fold a leftover legacy row into the current one
                    for duplicate in matches[1:]:
                        existing.created_at = min(existing.created_at, duplicate.created_at)
                        session.delete(duplicate)
                    existing.password = record.password
                    existing.server_id = record.server_id
                    existing.server_name = record.server_name
                    existing.domain = record.domain
                    existing.connection_links = links
                    existing.expires_at = record.expires_at
                    existing.updated_at = now
                    account = existing
                    action = "Updated"
                else:
                    account = Account(
                        user_id=record.user_id,
                        protocol_type=record.protocol_type,
                        username=record.username,
                        password=record.password,
                        server_id=record.server_id,
                        server_name=record.server_name,
                        domain=record.domain,
                        connection_links=links,
                        created_at=now,
                        updated_at=now,
                        expires_at=record.expires_at
                    )
                    session.add(account)
                    action = "Created"
                session.commit()
                logger.info(f"{action} {record.protocol_type} account {record.username} "
                            f"for user {record.user_id} (id={account.id})")
                return account
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Error upserting account {record.username}: {e}")
                raise StoreError(f"account upsert failed: {e}") from e
            finally:
                session.close()

    def get_existing_expiry(self, user_id, protocol_type, username, server_id=None, domain=None) -> Optional[int]:
        """Return the latest usable expiry for the identity, or None"""
        identity = AccountIdentity(user_id, protocol_type, username, server_id, domain)
        session = self.db.Session()
        try:
            row = session.query(Account.expires_at).filter(
                identity.clause(),
                Account.expires_at.isnot(None),
                Account.expires_at > 0
            ).order_by(Account.updated_at.desc(), Account.id.desc()).first()
            return row[0] if row else None
        except SQLAlchemyError as e:
            logger.error(f"Error reading expiry for {username}: {e}")
            raise StoreError(f"expiry lookup failed: {e}") from e
        finally:
            session.close()

    def delete_expired(self, cutoff: int) -> int:
        """Delete rows whose expiry is set and strictly older than cutoff"""
        session = self.db.Session()
        try:
            deleted = session.query(Account).filter(
                Account.expires_at.isnot(None),
                Account.expires_at < cutoff
            ).delete(synchronize_session=False)
            session.commit()
            return deleted
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Error deleting expired accounts: {e}")
            raise StoreError(f"expired purge failed: {e}") from e
        finally:
            session.close()

    def delete_account(self, identity: AccountIdentity) -> int:
        with self._locks.hold(identity.lock_key):
            session = self.db.Session()
            try:
                deleted = session.query(Account).filter(identity.clause()).delete(synchronize_session=False)
                session.commit()
                return deleted
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Error deleting account {identity.username}: {e}")
                raise StoreError(f"account delete failed: {e}") from e
            finally:
                session.close()

    def find(self, identity: AccountIdentity) -> Optional[Account]:
        session = self.db.Session()
        try:
            return self._latest(session, identity)
        except SQLAlchemyError as e:
            raise StoreError(f"account lookup failed: {e}") from e
        finally:
            session.close()

    def list_user_accounts(self, user_id: int) -> List[Account]:
        session = self.db.Session()
        try:
            return session.query(Account).filter(
                Account.user_id == user_id
            ).order_by(Account.created_at.desc()).all()
        except SQLAlchemyError as e:
            logger.error(f"Error listing accounts for user {user_id}: {e}")
            raise StoreError(f"account listing failed: {e}") from e
        finally:
            session.close()

    def count_user_accounts(self, user_id: int) -> int:
        session = self.db.Session()
        try:
            return session.query(func.count(Account.id)).filter(Account.user_id == user_id).scalar()
        except SQLAlchemyError as e:
            raise StoreError(f"account count failed: {e}") from e
        finally:
            session.close()

    # Migration support
    def legacy_candidates(self) -> List[Account]:
        """Rows with no server linkage but a usable domain"""
        session = self.db.Session()
        try:
            return session.query(Account).filter(
                or_(Account.server_id.is_(None), Account.server_id == 0),
                Account.domain.isnot(None),
                func.trim(Account.domain) != ''
            ).order_by(Account.id).all()
        except SQLAlchemyError as e:
            logger.error(f"Error listing legacy accounts: {e}")
            raise StoreError(f"legacy listing failed: {e}") from e
        finally:
            session.close()

    def link_server(self, account_id: int, server) -> bool:
        """Attach a server to a legacy row; never replaces an existing link"""
        session = self.db.Session()
        try:
            account = session.get(Account, account_id)
            if account is None or _has_server(account.server_id):
                return False
            account.server_id = server.id
            if not account.server_name:
                account.server_name = server.display_name or server.domain
            session.commit()
            return True
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreError(f"server link failed: {e}") from e
        finally:
            session.close()

    def _matches(self, session, identity: AccountIdentity) -> List[Account]:
        return session.query(Account).filter(identity.clause()).order_by(
            Account.updated_at.desc(), Account.id.desc()
        ).all()

    def _latest(self, session, identity: AccountIdentity) -> Optional[Account]:
        matches = self._matches(session, identity)
        return matches[0] if matches else None
