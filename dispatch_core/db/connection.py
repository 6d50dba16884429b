"""
Database connection and session management for the dispatch core.

Uses SQLAlchemy with SQLite for development and PostgreSQL for production.
"""
import logging
from typing import Optional, Tuple

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from dispatch_core.core.config import Config

logger = logging.getLogger(__name__)

# Create declarative base for ORM models
Base = declarative_base()


def _is_memory_sqlite(db_url: str) -> bool:
    return db_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in db_url


def create_db_engine(database_url: Optional[str] = None) -> Engine:
    """Create an engine for the configured database."""
    db_url = database_url or Config.DATABASE_URL

    logger.info(f"Creating database engine: {db_url}")

    if db_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}, "echo": Config.DEBUG}
        # An in-memory database lives only as long as its single connection
        if _is_memory_sqlite(db_url):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(db_url, **kwargs)

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()
    else:
        # PostgreSQL or other databases
        engine = create_engine(db_url, pool_pre_ping=True, echo=Config.DEBUG)

    return engine


def init_db(database_url: Optional[str] = None) -> Tuple[Engine, sessionmaker]:
    """Create the engine, the session factory and all tables."""
    # Register table classes on Base.metadata
    from dispatch_core.db import tables  # noqa: F401

    engine = create_db_engine(database_url)
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    logger.info("Database initialized successfully")
    return engine, session_factory
