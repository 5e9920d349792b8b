"""Database connection and session management."""

import os
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

DEFAULT_DATABASE_URL = "sqlite:///./automation_engine.db"

# Global engine and session factory, created lazily
_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None

# Base class for all database models
Base = declarative_base()


def get_database_engine(database_url: Optional[str] = None,
                        echo: bool = False,
                        connect_args: Optional[dict] = None) -> Engine:
    """Get or create the global database engine."""
    global _engine

    if _engine is None:
        _engine = create_database_engine(database_url, echo=echo, connect_args=connect_args)

    return _engine


def create_database_engine(database_url: Optional[str] = None,
                           echo: bool = False,
                           connect_args: Optional[dict] = None) -> Engine:
    """Create a new engine with settings appropriate for the URL."""
    if database_url is None:
        database_url = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)

    if connect_args is None:
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}
        else:
            connect_args = {}

    # An in-memory SQLite database only exists on one connection
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            connect_args=connect_args,
            poolclass=StaticPool,
            echo=echo
        )

    return create_engine(
        database_url,
        echo=echo,
        connect_args=connect_args,
        pool_pre_ping=not database_url.startswith("sqlite")
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to the given engine."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def get_session_factory() -> sessionmaker:
    """Get the global session factory, creating the engine if needed."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_database_engine())
    return _session_factory


def init_database(database_url: Optional[str] = None, echo: bool = False) -> sessionmaker:
    """(Re)bind the global engine and session factory to a database URL."""
    global _engine, _session_factory
    reset_database_engine()
    _engine = create_database_engine(database_url, echo=echo)
    _session_factory = create_session_factory(_engine)
    return _session_factory


def reset_database_engine():
    """Reset the global database engine (mainly for testing)."""
    global _engine, _session_factory
    if _engine:
        _engine.dispose()
    _engine = None
    _session_factory = None


@contextmanager
def session_scope(session_factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """Transactional scope: commit on success, roll back on any error."""
    factory = session_factory or get_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_tables(engine: Optional[Engine] = None):
    """Create all database tables."""
    # Register the mapped classes on Base.metadata
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=engine or get_database_engine())


def drop_tables(engine: Optional[Engine] = None):
    """Drop all database tables."""
    from . import models  # noqa: F401
    Base.metadata.drop_all(bind=engine or get_database_engine())
