"""Database migrations and store tuning."""

from typing import Optional

from sqlalchemy import Engine, text

from .database import create_tables, get_database_engine
from ..core.logging import get_logger

logger = get_logger(__name__)


def create_queue_indexes(engine: Engine):
    """Create partial indexes that speed up claiming on PostgreSQL."""
    if engine.dialect.name != "postgresql":
        return

    try:
        with engine.connect() as connection:
            # Only unprocessed items are ever scanned by lock_batch
            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_event_queue_unprocessed
                ON workflow_event_queue(created_at, id)
                WHERE processed_at IS NULL
            """))

            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_run_steps_queued
                ON workflow_run_steps(scheduled_for, id)
                WHERE status = 'queued'
            """))

            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_outbox_queued
                ON workflow_message_outbox(created_at, id)
                WHERE status = 'queued'
            """))

            connection.commit()
            logger.info("Created partial indexes for queue claiming")

    except Exception as e:
        logger.error(f"Failed to create queue indexes: {str(e)}")
        raise


def optimize_sqlite(engine: Engine):
    """Switch a file-backed SQLite store to WAL so readers do not block the claimer."""
    if engine.dialect.name != "sqlite" or engine.url.database in (None, "", ":memory:"):
        return

    try:
        with engine.connect() as connection:
            connection.execute(text("PRAGMA journal_mode=WAL"))
            connection.commit()
            logger.info("Applied SQLite WAL journal mode")
    except Exception as e:
        logger.error(f"Failed to optimize database: {str(e)}")
        raise


def run_migrations(engine: Optional[Engine] = None):
    """Create tables and apply dialect-specific tuning."""
    engine = engine or get_database_engine()
    try:
        logger.info("Starting database migrations")
        create_tables(engine)
        create_queue_indexes(engine)
        optimize_sqlite(engine)
        logger.info("Database migrations completed successfully")
    except Exception as e:
        logger.error(f"Database migrations failed: {str(e)}")
        raise


if __name__ == "__main__":
    run_migrations()
