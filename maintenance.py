import logging
from config import DATABASE_URL
from database import Database
from janitor import ReconciliationJanitor
from ledger import AccountLedger
from servers import ServerDirectory

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def main(db_url=DATABASE_URL):
    """Run one janitor pass outside the bot"""
    db = Database(db_url)
    try:
        logger.info("Starting maintenance tasks...")
        janitor = ReconciliationJanitor(AccountLedger(db), ServerDirectory(db))
        result = janitor.run_once()
        logger.info(f"Maintenance tasks completed successfully! {result}")
        return result
    except Exception as e:
        logger.error(f"Error during maintenance: {e}")
        raise
    finally:
        db.dispose()


if __name__ == "__main__":
    main()
