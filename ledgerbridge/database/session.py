"""
SQLAlchemy engine and session factory.

DATABASE_URL selects the database; Heroku/Render style postgres:// URLs
are rewritten to postgresql://. Without DATABASE_URL a local SQLite file
is used.
"""

import os
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from ledgerbridge.db_base import Base

DEFAULT_DATABASE_URL = "sqlite:///./ledgerbridge.db"


def get_database_url() -> str:
    database_url = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    database_url = get_database_url()
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


def get_session_factory() -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def init_db(engine: Engine = None) -> None:
    """Create tables that do not exist yet."""
    import ledgerbridge.models  # noqa: F401  registers the models on Base

    Base.metadata.create_all(bind=engine or get_engine())
