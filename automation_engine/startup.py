"""Application startup script and CLI interface."""

import argparse
import json
import sys

from .config import (
    AppConfig,
    LogLevel,
    load_config,
    get_development_config,
    get_production_config,
    get_testing_config,
    validate_config
)
from .core.logging import get_logger, setup_logging


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        description="Automation Engine - trigger evaluation and execution for CRM workflows"
    )

    # Server configuration
    parser.add_argument("--host", help="Host to bind the server to")
    parser.add_argument("--port", type=int, help="Port to bind the server to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    # Environment configuration
    parser.add_argument(
        "--env",
        choices=["development", "production", "testing"],
        help="Environment configuration preset"
    )
    parser.add_argument("--config", help="Path to a .env configuration file")

    parser.add_argument("--database-url", help="Database connection URL")

    # Logging configuration
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level"
    )
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    parser.add_argument(
        "--tick-once",
        action="store_true",
        help="Run one queue consumer tick, print its counts and exit"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("run", help="Run the automation engine server")

    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")
    db_subparsers.add_parser("init", help="Create tables and indexes")
    db_subparsers.add_parser("reset", help="Drop and recreate all tables")
    db_subparsers.add_parser("recover-locks", help="Clear stale queue locks")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration based on command line arguments."""
    if args.env == "development":
        config = get_development_config()
    elif args.env == "production":
        config = get_production_config()
    elif args.env == "testing":
        config = get_testing_config()
    else:
        config = load_config(args.config)

    # Command line arguments win over presets and environment
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.reload:
        config.reload = args.reload
    if args.database_url:
        config.database_url = args.database_url
    if args.log_level:
        config.log_level = LogLevel(args.log_level)
    if args.log_file:
        config.log_file = args.log_file
    if args.debug:
        config.debug = args.debug

    return config


def run_server(config: AppConfig):
    """Run the automation engine server."""
    import uvicorn
    from .factory import create_app

    logger = get_logger(__name__)
    logger.info(f"Starting server on {config.host}:{config.port}")
    uvicorn.run(create_app(config), **config.get_uvicorn_config())


def run_tick_once(config: AppConfig) -> dict:
    """Run a single consumer tick against the configured database."""
    from .components import EngineComponents
    from .storage.database import init_database
    from .storage.migrations import run_migrations

    session_factory = init_database(config.database_url, echo=config.database_echo)
    run_migrations()
    result = EngineComponents(config, session_factory).consumer.tick()
    return {"ok": True, **result.model_dump()}


def run_database_command(command: str, config: AppConfig):
    """Run database management commands."""
    from .core.event_queue import EventQueue
    from .storage.database import drop_tables, init_database
    from .storage.migrations import run_migrations

    logger = get_logger(__name__)
    session_factory = init_database(config.database_url, echo=config.database_echo)

    if command == "init":
        logger.info("Initializing database tables...")
        run_migrations()
        logger.info("Database tables created successfully")

    elif command == "reset":
        logger.info("Resetting database...")
        drop_tables()
        run_migrations()
        logger.info("Database reset completed successfully")

    elif command == "recover-locks":
        recovered = EventQueue(session_factory, lock_timeout_seconds=config.lock_timeout_seconds).recover_stale_locks()
        print(f"Recovered {recovered} stale lock(s)")


def show_configuration(config: AppConfig):
    """Show current configuration, with secrets masked."""
    print("Current Configuration:")
    print(f"  App Name: {config.app_name}")
    print(f"  Version: {config.app_version}")
    print(f"  Debug: {config.debug}")
    print(f"  Host: {config.host}")
    print(f"  Port: {config.port}")
    print(f"  Database URL: {config.database_url}")
    print(f"  Log Level: {config.log_level.value}")
    print(f"  Batch Size: {config.batch_size}")
    print(f"  Lock Timeout: {config.lock_timeout_seconds}s")
    print(f"  Trigger Evaluation: {config.trigger_evaluation_url or 'in-process'}")
    print(f"  Runner Secret: {'set' if config.runner_secret else 'unset'}")
    print(f"  Cron Secret: {'set' if config.cron_secret else 'unset'}")


def validate_configuration_command(config: AppConfig):
    """Validate configuration and show results."""
    try:
        validate_config(config)
        print("Configuration validation: PASSED")
    except ValueError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        sys.exit(1)


def main(argv=None):
    """Main entry point for the application."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    try:
        config = load_configuration(args)

        if args.command == "config":
            if args.config_command == "show":
                show_configuration(config)
            elif args.config_command == "validate":
                validate_configuration_command(config)
            else:
                print("Configuration command required. Use --help for options.")
                sys.exit(1)
            return

        setup_logging(level=config.log_level.value, log_file=config.log_file, structured=config.log_structured)

        if args.tick_once:
            print(json.dumps(run_tick_once(config)))
        elif args.command == "db":
            if not args.db_command:
                print("Database command required. Use --help for options.")
                sys.exit(1)
            run_database_command(args.db_command, config)
        elif args.command in ("run", None):
            validate_config(config)
            run_server(config)
        else:
            parser.print_help()

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
