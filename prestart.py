import logging
import time

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError

from notify_hub.core.config import settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MAX_TRIES = 60
WAIT_SECONDS = 1


def _sync_db_url() -> str:
    return settings.database_url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


def check_db_connection() -> bool:
    """Wait until the database accepts connections."""
    engine = create_engine(_sync_db_url())
    for _ in range(MAX_TRIES):
        try:
            with engine.connect():
                logger.info("Database connection successful.")
                return True
        except OperationalError:
            logger.info("Database not ready yet, waiting %s second(s)...", WAIT_SECONDS)
            time.sleep(WAIT_SECONDS)
    logger.error("Could not connect to the database after multiple attempts.")
    return False


def run_migrations() -> None:
    logger.info("Running database migrations...")
    alembic_cfg = Config("alembic.ini")
    alembic_cfg.set_main_option("script_location", "migrations")
    alembic_cfg.set_main_option("sqlalchemy.url", _sync_db_url())
    command.upgrade(alembic_cfg, "head")
    logger.info("Migrations applied successfully.")


if __name__ == "__main__":
    if not check_db_connection():
        raise SystemExit(1)
    run_migrations()
