"""
Database configuration and session management

The relational schema belongs to the wider studio application; this service
only needs tenants, clients and galleries (see models.py).
"""

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from contextlib import contextmanager
from config import settings

logger = structlog.get_logger()

# Create Base class for models
Base = declarative_base()


def build_engine(database_url: str) -> Engine:
    """
    Create a SQLAlchemy engine for the given URL.

    In-memory SQLite gets a StaticPool so every session sees the same database.
    """
    kwargs = {"echo": settings.DEBUG, "pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


engine = build_engine(settings.DATABASE_URL)

# Create SessionLocal class
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Engine = None):
    """Initialize database - create all tables"""
    # Register models on Base.metadata
    import models  # noqa: F401

    try:
        Base.metadata.create_all(bind=bind or engine)
        logger.info("database_initialized", url=str((bind or engine).url))
    except Exception as e:
        logger.error("database_init_failed", error=str(e))
        raise


@contextmanager
def get_db_context(session_factory=None):
    """
    Get database session as context manager

    Args:
        session_factory: Optional sessionmaker, defaults to SessionLocal

    Yields:
        Session: SQLAlchemy database session
    """
    db = (session_factory or SessionLocal)()
    try:
        yield db
    finally:
        db.close()
