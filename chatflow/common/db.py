"""
Database Connection Management

This module provides database connection setup and session management
for the chatflow pipeline using SQLAlchemy.

The module implements a singleton pattern for the database engine
and provides session factory functions.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from chatflow.common.config import settings


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    All model classes inherit from this base to provide
    consistent metadata and configuration.
    """
    pass


# Global database connection objects
_engine = None
_SessionLocal = None


def init_engine(engine=None):
    """
    Initialize the database engine and session factory.

    Creates a singleton database engine with connection pooling
    and session factory configured for the application. An already
    built engine may be passed in (tests bind an in-memory SQLite
    engine this way).

    Returns:
        sqlalchemy.Engine: The database engine instance
    """
    global _engine, _SessionLocal

    if engine is not None:
        _engine = engine
    elif _engine is None:
        url = settings.resolved_database_url()
        options = {"pool_pre_ping": True, "echo": False}
        if not url.startswith("sqlite"):
            options["pool_size"] = settings.db_pool_size
            options["max_overflow"] = settings.db_max_overflow
        _engine = create_engine(url, **options)

    if _SessionLocal is None or _SessionLocal.kw.get("bind") is not _engine:
        _SessionLocal = sessionmaker(
            bind=_engine,
            expire_on_commit=False
        )

    return _engine


def dispose_engine() -> None:
    """Drop the cached engine and session factory."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_session():
    """
    Get a new database session.

    Creates a new database session for performing database operations.
    The session should be closed after use or used in a context manager.

    Returns:
        sqlalchemy.orm.Session: A new database session

    Example:
        with get_session() as session:
            rows = session.query(SessionProcessingStatus).all()
    """
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal()
