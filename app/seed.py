import logging

from sqlalchemy import text
from sqlalchemy.exc import OperationalError, ProgrammingError

from app.db.session import SessionLocal
from app.services.fleet_service import seed_default_fleet
from app.services.record_store import RecordStore

logger = logging.getLogger(__name__)


def run(db=None):
    if db is None:
        db = SessionLocal()
    try:
        # If migrations haven't been applied yet, seeding must not crash the API.
        try:
            db.execute(text("SELECT 1 FROM kv_records LIMIT 1"))
        except (ProgrammingError, OperationalError):
            db.rollback()
            logger.warning("kv_records table not found yet. Skipping seeding (run alembic upgrade head).")
            return

        inserted = seed_default_fleet(RecordStore(db))
        if inserted:
            logger.info("seeded %d cars", inserted)
        else:
            logger.info("fleet already present, nothing to seed")
    finally:
        db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run()
