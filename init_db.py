import json
import logging
import os

from sqlalchemy.exc import SQLAlchemyError

from access import ResellerRegistry
from config import DATABASE_URL, LEGACY_FILES
from database import Database, TrialAccess
from errors import StoreError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def import_legacy_resellers(db: Database, path: str) -> int:
    """Import the newline-separated reseller id file"""
    if not os.path.exists(path):
        return 0

    registry = ResellerRegistry(db)
    added = 0
    with open(path, 'r') as f:
        for line in f:
            line = line.strip()
            if not line.isdigit():
                continue
            if registry.add_reseller(int(line)):
                added += 1
    return added


def import_legacy_trials(db: Database, path: str) -> int:
    """Import the {user_id: "YYYY-MM-DD"} trial JSON file"""
    if not os.path.exists(path):
        return 0

    with open(path, 'r') as f:
        try:
            data = json.load(f)
        except ValueError as e:
            logger.error(f"Skipping unreadable trial file {path}: {e}")
            return 0

    session = db.Session()
    try:
        count = 0
        for user_id, day in data.items():
            if not str(user_id).isdigit() or not isinstance(day, str):
                continue
            session.merge(TrialAccess(user_id=int(user_id), last_trial_date=day[:10]))
            count += 1
        session.commit()
        return count
    except SQLAlchemyError as e:
        session.rollback()
        raise StoreError(f"trial import failed: {e}") from e
    finally:
        session.close()


def init_database(db_url=DATABASE_URL):
    """Create tables and import legacy flat files"""
    db = Database(db_url)
    logger.info("✅ Database tables created successfully!")

    try:
        resellers = import_legacy_resellers(db, LEGACY_FILES["resellers"])
        trials = import_legacy_trials(db, LEGACY_FILES["trial"])
        logger.info(f"✅ Imported {resellers} resellers and {trials} trial records")
    except (StoreError, OSError) as e:
        logger.error(f"❌ Error importing legacy files: {e}")
    return db


if __name__ == "__main__":
    logger.info("Initializing database...")
    init_database()
    logger.info("Done!")
