"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .api.endpoints import router
from .components import EngineComponents
from .config import AppConfig, get_config, validate_config
from .core.exceptions import WorkflowEngineError, create_error_response
from .core.logging import get_logger, setup_logging
from .core.middleware import (
    ErrorHandlingMiddleware,
    PerformanceMonitoringMiddleware,
    RequestLoggingMiddleware,
    status_code_for_error,
)
from .storage.database import get_session_factory, init_database
from .storage.migrations import run_migrations


def initialize_database(config: AppConfig, logger) -> sessionmaker:
    """Bind the global engine to the configured database and run migrations."""
    try:
        session_factory = init_database(config.database_url, echo=config.database_echo)
        run_migrations()
        logger.info("Database initialized")
        return session_factory
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def create_lifespan_handler(config: AppConfig, session_factory: Optional[sessionmaker] = None):
    """Create application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        factory = session_factory or initialize_database(config, logger)
        app.state.components = EngineComponents(config, factory)
        app.state.session_factory = factory
        logger.info("Application startup completed successfully")

        yield

        logger.info(f"Shutting down {config.app_name}")

    return lifespan


async def engine_error_handler(request: Request, exc: WorkflowEngineError) -> JSONResponse:
    return JSONResponse(status_code=status_code_for_error(exc), content=create_error_response(exc))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies are client errors: 400 rather than 422."""
    return JSONResponse(
        status_code=400,
        content={
            "ok": False,
            "error": "invalid_body",
            "message": "Request body failed validation",
            "details": {"validation_errors": [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
            ]},
        },
    )


def create_app(config: Optional[AppConfig] = None, session_factory: Optional[sessionmaker] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Configuration; loaded from the environment when omitted
        session_factory: Pre-built session factory, skipping database initialization
    """
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Trigger evaluation and execution engine for CRM automation workflows",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, session_factory)
    )
    app.state.config = config

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    app.add_middleware(ErrorHandlingMiddleware)
    if config.enable_performance_monitoring:
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)
        app.add_middleware(RequestLoggingMiddleware)

    app.add_exception_handler(WorkflowEngineError, engine_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(router)
    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {
            "status": "healthy",
            "service": config.app_name.lower().replace(" ", "-"),
            "version": config.app_version
        }

    @app.get("/health/ready")
    def readiness_check(request: Request):
        """Readiness check: the database answers a trivial query."""
        factory = getattr(request.app.state, "session_factory", None) or get_session_factory()
        session = factory()
        try:
            session.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            get_logger(__name__).error(f"Readiness check failed: {str(e)}")
            return JSONResponse(status_code=503, content={"status": "not_ready", "error": str(e)})
        finally:
            session.close()
        return {"status": "ready"}
