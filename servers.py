import logging
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from database import Database, Server
from errors import StoreError

logger = logging.getLogger(__name__)


def normalize_domain(domain: Optional[str]) -> str:
    return (domain or '').strip().lower()


class ServerDirectory:
    """Lookup of VPN panel servers"""

    def __init__(self, db: Database):
        self.db = db

    def get_by_id(self, server_id: int) -> Optional[Server]:
        session = self.db.Session()
        try:
            return session.get(Server, server_id)
        except SQLAlchemyError as e:
            logger.error(f"Error getting server {server_id}: {e}")
            raise StoreError(f"server lookup failed: {e}") from e
        finally:
            session.close()

    def find_by_domain(self, domain: str) -> Optional[Server]:
        """Find a server by case-insensitive, trimmed domain"""
        wanted = normalize_domain(domain)
        if not wanted:
            return None

        session = self.db.Session()
        try:
            return session.query(Server).filter(
                func.lower(func.trim(Server.domain)) == wanted
            ).order_by(Server.id).first()
        except SQLAlchemyError as e:
            logger.error(f"Error finding server by domain {domain}: {e}")
            raise StoreError(f"server lookup failed: {e}") from e
        finally:
            session.close()

    def list_servers(self, reseller_only: Optional[bool] = None) -> List[Server]:
        session = self.db.Session()
        try:
            query = session.query(Server)
            if reseller_only is True:
                query = query.filter(Server.is_reseller_only == True)
            elif reseller_only is False:
                query = query.filter((Server.is_reseller_only == False) | (Server.is_reseller_only.is_(None)))
            return query.order_by(Server.id).all()
        except SQLAlchemyError as e:
            logger.error(f"Error listing servers: {e}")
            raise StoreError(f"server listing failed: {e}") from e
        finally:
            session.close()

    def add_server(self, domain, auth_token, display_name, is_reseller_only=False, **extra) -> int:
        session = self.db.Session()
        try:
            server = Server(
                domain=domain.strip(),
                auth_token=auth_token,
                display_name=display_name,
                is_reseller_only=is_reseller_only,
                **extra
            )
            session.add(server)
            session.commit()
            logger.info(f"Added server {display_name} ({domain})")
            return server.id
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Error adding server: {e}")
            raise StoreError(f"server insert failed: {e}") from e
        finally:
            session.close()
