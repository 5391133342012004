import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from config import SettingsStore
from database import Database, Reseller
from errors import StoreError
from servers import ServerDirectory

logger = logging.getLogger(__name__)


class ResellerRegistry:
    """Reseller membership, stored in the resellers table"""

    def __init__(self, db: Database):
        self.db = db

    def is_user_reseller(self, user_id: int) -> bool:
        session = self.db.Session()
        try:
            return session.get(Reseller, user_id) is not None
        except SQLAlchemyError as e:
            raise StoreError(f"reseller lookup failed: {e}") from e
        finally:
            session.close()

    def add_reseller(self, user_id: int) -> bool:
        """Register a reseller; False if already registered"""
        session = self.db.Session()
        try:
            if session.get(Reseller, user_id) is not None:
                return False
            session.add(Reseller(user_id=user_id))
            session.commit()
            logger.info(f"User {user_id} registered as reseller")
            return True
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreError(f"reseller insert failed: {e}") from e
        finally:
            session.close()

    def remove_reseller(self, user_id: int) -> bool:
        session = self.db.Session()
        try:
            deleted = session.query(Reseller).filter_by(user_id=user_id).delete()
            session.commit()
            if deleted:
                logger.info(f"User {user_id} removed from resellers")
            return bool(deleted)
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreError(f"reseller delete failed: {e}") from e
        finally:
            session.close()

    def list_resellers(self) -> List[int]:
        session = self.db.Session()
        try:
            return [row.user_id for row in session.query(Reseller).order_by(Reseller.added_at).all()]
        except SQLAlchemyError as e:
            raise StoreError(f"reseller listing failed: {e}") from e
        finally:
            session.close()


@dataclass(frozen=True)
class AccessDecision:
    ok: bool
    reason: Optional[str] = None


ALLOW = AccessDecision(True)


class AccessPolicy:
    """Decides whether a user may provision on a server.

    Errors while reading the server or the reseller membership deny access.
    """

    def __init__(self, servers: ServerDirectory, resellers: ResellerRegistry, settings: SettingsStore):
        self.servers = servers
        self.resellers = resellers
        self.settings = settings

    def check_server_access(self, server_id: int, user_id: int) -> AccessDecision:
        try:
            server = self.servers.get_by_id(server_id)
        except StoreError as e:
            logger.error(f"Server lookup failed for access check on {server_id}: {e}")
            return AccessDecision(False, 'not_found')
        if server is None:
            return AccessDecision(False, 'not_found')

        if not server.is_reseller_only:
            return ALLOW

        try:
            if self.resellers.is_user_reseller(user_id):
                return ALLOW
        except Exception as e:
            logger.warning(f"Reseller check failed for user {user_id}, denying: {e}")
        return AccessDecision(False, 'reseller_only')

    def allowed_servers(self, user_id: int):
        """Servers offered to the user: reseller-only ones for resellers, public ones otherwise"""
        try:
            is_reseller = self.resellers.is_user_reseller(user_id)
        except Exception as e:
            logger.warning(f"Reseller check failed for user {user_id}: {e}")
            is_reseller = False
        return self.servers.list_servers(reseller_only=is_reseller)

    def meets_reseller_terms(self, account_count: int, topup_total: int) -> bool:
        terms = self.settings.current.reseller_terms
        return account_count >= terms.min_accounts and topup_total >= terms.min_topup_amount
