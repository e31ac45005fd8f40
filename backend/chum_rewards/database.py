"""
Database connection and session management.

This module handles SQLAlchemy engine setup and the session factory used by
the SQL document store. DATABASE_URL selects the database; without it a
local SQLite file is used.
"""

import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from chum_rewards.config import get_settings

logger = logging.getLogger(__name__)

backend_dir = Path(__file__).parent.parent

# Base class for declarative models
Base = declarative_base()

# Session factory, bound in configure_database()
SessionLocal = sessionmaker(autocommit=False, autoflush=False)

engine: Optional[Engine] = None


def create_db_engine(database_url: Optional[str] = None) -> Engine:
    """
    Create a SQLAlchemy engine.

    Args:
        database_url: SQLAlchemy URL (falls back to a SQLite file in backend/)

    Returns:
        Engine (connections are opened lazily)
    """
    if database_url and database_url.startswith("sqlite"):
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # In-memory databases must share one connection across threads
            return create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=False
            )
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=False
        )

    if database_url:
        return create_engine(
            database_url,
            # Connection pool settings for production
            pool_size=10,  # Number of connections to maintain
            max_overflow=20,  # Additional connections beyond pool_size
            pool_pre_ping=True,  # Verify connections before using them
            pool_recycle=3600,  # Recycle connections after 1 hour
            echo=False,
        )

    # No DATABASE_URL - use SQLite for local runs
    logger.warning("DATABASE_URL not set. Using SQLite file in backend/ for the ledger store.")
    sqlite_path = backend_dir / "chum_rewards.db"
    return create_engine(
        f"sqlite:///{sqlite_path}",
        connect_args={"check_same_thread": False},
        echo=False
    )


def configure_database(database_url: Optional[str] = None) -> Engine:
    """
    (Re)bind the module engine and session factory, creating tables.

    Args:
        database_url: SQLAlchemy URL; defaults to settings.database_url

    Returns:
        The configured engine
    """
    global engine

    # Import models so their tables are registered on Base.metadata
    from chum_rewards import models  # noqa: F401

    if database_url is None:
        database_url = get_settings().database_url

    engine = create_db_engine(database_url)
    SessionLocal.configure(bind=engine)
    Base.metadata.create_all(bind=engine)
    logger.info(f"Database engine ready: {engine.url.render_as_string(hide_password=True)}")
    return engine


def get_engine() -> Engine:
    if engine is None:
        return configure_database()
    return engine
