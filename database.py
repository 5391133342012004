import json
import logging
from datetime import datetime
from sqlalchemy import Column, Integer, BigInteger, String, Boolean, Text, TIMESTAMP, Index, create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

# Declare base for using SQLAlchemy
Base = declarative_base()


# Server model
class Server(Base):
    __tablename__ = 'servers'

    id = Column(Integer, primary_key=True, autoincrement=True)
    domain = Column(String, nullable=False)
    auth_token = Column(String)
    display_name = Column(String)
    is_reseller_only = Column(Boolean, default=False)
    price = Column(Integer, default=0)
    quota = Column(Integer, default=0)
    ip_limit = Column(Integer, default=0)
    account_limit = Column(Integer, default=0)
    total_accounts = Column(Integer, default=0)
    service = Column(String, default='ssh')


# Account model, one row per provisioned account
class Account(Base):
    __tablename__ = 'accounts'
    __table_args__ = (
        Index('ix_accounts_identity', 'user_id', 'protocol_type', 'username'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False)
    protocol_type = Column(String, nullable=False)
    username = Column(String, nullable=False)
    password = Column(String)
    server_id = Column(Integer)  # null or 0 on legacy domain-only rows
    server_name = Column(String)
    domain = Column(String)
    connection_links = Column(Text)  # JSON list
    created_at = Column(BigInteger, nullable=False)  # epoch millis
    expires_at = Column(BigInteger, index=True)  # epoch millis, null means untracked
    updated_at = Column(BigInteger, nullable=False)

    @property
    def links(self):
        if not self.connection_links:
            return []
        return json.loads(self.connection_links)


# TrialAccess model
class TrialAccess(Base):
    __tablename__ = 'trial_access'

    user_id = Column(BigInteger, primary_key=True)
    last_trial_date = Column(String(10), nullable=False)  # YYYY-MM-DD


# Reseller model
class Reseller(Base):
    __tablename__ = 'resellers'

    user_id = Column(BigInteger, primary_key=True)
    added_at = Column(TIMESTAMP, default=datetime.utcnow)


class Database:
    def __init__(self, db_url):
        connect_args = {}
        if db_url.startswith('sqlite'):
            connect_args['check_same_thread'] = False
        self.engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith('sqlite'):
            event.listen(self.engine, 'connect', _sqlite_pragmas)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    def dispose(self):
        self.engine.dispose()


def _sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()
