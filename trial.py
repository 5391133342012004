import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from config import TIMEZONE, SettingsStore
from database import Database, TrialAccess
from errors import StoreError

logger = logging.getLogger(__name__)


def local_today(tz=TIMEZONE) -> str:
    return datetime.now(tz).strftime('%Y-%m-%d')


class TrialRateLimiter:
    """One trial per user per local calendar day.

    Read failures count as "not used yet".
    """

    def __init__(self, db: Database, settings: SettingsStore, today=local_today):
        self.db = db
        self.settings = settings
        self.today = today

    def has_used_trial_today(self, user_id: int) -> bool:
        session = self.db.Session()
        try:
            record = session.get(TrialAccess, user_id)
            return record is not None and record.last_trial_date == self.today()
        except SQLAlchemyError as e:
            logger.warning(f"Trial lookup failed for user {user_id}, allowing: {e}")
            return False
        finally:
            session.close()

    def record_trial_used(self, user_id: int):
        session = self.db.Session()
        try:
            session.merge(TrialAccess(user_id=user_id, last_trial_date=self.today()))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Error recording trial for user {user_id}: {e}")
            raise StoreError(f"trial record failed: {e}") from e
        finally:
            session.close()

    def can_start_trial(self, user_id: int, is_reseller: bool = False):
        """Return (allowed, reason)"""
        if not self.settings.current.trial_enabled:
            return False, 'trial_disabled'
        if is_reseller:
            return True, None
        if self.has_used_trial_today(user_id):
            return False, 'trial_used'
        return True, None
