"""Configuration management for the Automation Engine."""

import os
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseType(str, Enum):
    """Supported database types."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="Automation Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Database settings
    database_url: str = Field(
        default="sqlite:///./automation_engine.db",
        description="Database connection URL"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Queue consumer settings
    batch_size: int = Field(default=25, description="Queue items claimed per tick")
    lock_timeout_seconds: int = Field(
        default=300,
        description="Age after which a queue, step or outbox lock is considered abandoned"
    )
    step_batch_size: int = Field(default=25, description="Run steps claimed per step tick")
    outbox_batch_size: int = Field(default=25, description="Outbox messages claimed per outbox tick")

    # Trigger evaluation
    trigger_evaluation_url: Optional[str] = Field(
        default=None,
        description="Remote /triggers/evaluate URL; evaluation runs in-process when unset"
    )
    trigger_evaluation_timeout: float = Field(default=10.0, description="Remote evaluation timeout in seconds")

    # Security settings
    runner_secret: Optional[str] = Field(default=None, description="Bearer secret for runner endpoints")
    cron_secret: Optional[str] = Field(default=None, description="Shared secret for the scheduler wrapper")
    trust_scheduler_header: bool = Field(
        default=True,
        description="Accept the hosting scheduler's cron header as authorization"
    )
    scheduler_user_agent_prefix: str = Field(
        default="vercel-cron/",
        description="User agent prefix identifying the hosting scheduler"
    )
    cors_origins: list = Field(default=["*"], description="CORS allowed origins")
    cors_methods: list = Field(default=["GET", "POST"], description="CORS allowed methods")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_structured: bool = Field(default=False, description="Emit JSON log lines")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")

    # Performance monitoring settings
    slow_request_threshold: float = Field(
        default=5.0,
        description="Slow request threshold in seconds"
    )
    enable_performance_monitoring: bool = Field(
        default=True,
        description="Enable performance monitoring middleware"
    )

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")

        scheme = v.split('://')[0].lower()
        if not (scheme.startswith('sqlite') or scheme.startswith('postgresql')):
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: sqlite, postgresql")

        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('batch_size', 'step_batch_size', 'outbox_batch_size')
    @classmethod
    def validate_batch_sizes(cls, v):
        if v < 1:
            raise ValueError("Batch size must be at least 1")
        return v

    @field_validator('lock_timeout_seconds')
    @classmethod
    def validate_lock_timeout(cls, v):
        if v < 1:
            raise ValueError("Lock timeout must be at least 1 second")
        return v

    @field_validator('runner_secret', 'cron_secret', 'trigger_evaluation_url')
    @classmethod
    def blank_to_none(cls, v):
        """Treat blank values as unset."""
        if v is not None and not v.strip():
            return None
        return v

    @property
    def database_type(self) -> DatabaseType:
        """Get the database type from the URL."""
        scheme = self.database_url.split('://')[0].lower()
        if scheme.startswith('sqlite'):
            return DatabaseType.SQLITE
        return DatabaseType.POSTGRESQL

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.database_type == DatabaseType.SQLITE

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return not self.debug and not self.reload

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from AUTOMATION_ENGINE_* environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"AUTOMATION_ENGINE_{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return value.split(',') if value else default
            return type_func(value)

        return cls(
            app_name=get_env("APP_NAME", "Automation Engine"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            database_url=get_env("DATABASE_URL", "sqlite:///./automation_engine.db"),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            batch_size=get_env("BATCH_SIZE", 25, int),
            lock_timeout_seconds=get_env("LOCK_TIMEOUT_SECONDS", 300, int),
            step_batch_size=get_env("STEP_BATCH_SIZE", 25, int),
            outbox_batch_size=get_env("OUTBOX_BATCH_SIZE", 25, int),
            trigger_evaluation_url=get_env("TRIGGER_EVALUATION_URL", None),
            trigger_evaluation_timeout=get_env("TRIGGER_EVALUATION_TIMEOUT", 10.0, float),
            runner_secret=get_env("RUNNER_SECRET", None),
            cron_secret=get_env("CRON_SECRET", None),
            trust_scheduler_header=get_env("TRUST_SCHEDULER_HEADER", True, bool),
            scheduler_user_agent_prefix=get_env("SCHEDULER_USER_AGENT_PREFIX", "vercel-cron/"),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST"], list),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_file=get_env("LOG_FILE", None),
            log_structured=get_env("LOG_STRUCTURED", False, bool),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            slow_request_threshold=get_env("SLOW_REQUEST_THRESHOLD", 5.0, float),
            enable_performance_monitoring=get_env("ENABLE_PERFORMANCE_MONITORING", True, bool),
        )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file and environment variables."""
    global _config

    if config_file and os.path.exists(config_file):
        from dotenv import load_dotenv
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        from dotenv import load_dotenv
        load_dotenv('.env')

    _config = AppConfig.from_env()

    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def validate_config(config: AppConfig) -> None:
    """Validate configuration settings that depend on the environment."""
    errors = []

    if config.is_sqlite and ":memory:" not in config.database_url:
        db_path = config.database_url.split(":///", 1)[-1]
        db_dir = os.path.dirname(db_path)
        if db_dir and not os.path.exists(db_dir):
            try:
                os.makedirs(db_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create database directory {db_dir}: {e}")

    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")

    if config.is_production and not config.runner_secret:
        errors.append("runner_secret must be set in production; runner endpoints reject every call without it")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


# Environment-specific configurations
def get_development_config() -> AppConfig:
    """Get development configuration."""
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True,
        enable_performance_monitoring=True
    )


def get_production_config() -> AppConfig:
    """Get production configuration."""
    return AppConfig(
        debug=False,
        reload=False,
        log_level=LogLevel.INFO,
        database_echo=False,
        log_structured=True,
        trust_scheduler_header=False,
        cors_origins=[]  # Restrict CORS in production
    )


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        runner_secret="test-runner-secret",
        cron_secret="test-cron-secret",
        lock_timeout_seconds=60,
    )
