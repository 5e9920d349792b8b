#!/usr/bin/env python3
"""Database initialization script."""

import sys

from automation_engine.config import load_config
from automation_engine.core.logging import setup_logging
from automation_engine.storage.database import init_database
from automation_engine.storage.migrations import run_migrations


def main():
    """Initialize the database."""
    config = load_config()

    logger = setup_logging(level=config.log_level.value)

    try:
        logger.info(f"Initializing database at {config.database_url}...")

        init_database(config.database_url, echo=config.database_echo)
        run_migrations()

        logger.info("Database initialization completed")

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
