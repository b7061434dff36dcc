"""
Database setup for the crop cache.
Provides SQLAlchemy engine/session utilities for SQLite.
"""
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from settings import settings

DATABASE_URL = settings.SMART_CROP_DB_URL

Base = declarative_base()


def _ensure_sqlite_dir(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database and parsed.database != ":memory:":
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)


def make_engine(url: str) -> Engine:
    _ensure_sqlite_dir(url)
    # check_same_thread=False allows usage across FastAPI and analyzer threads
    return create_engine(url, connect_args={"check_same_thread": False})


def make_session_factory(url: Optional[str] = None) -> sessionmaker:
    """Session factory bound to its own engine, with the cache tables created."""
    bound = make_engine(url) if url else engine
    init_db(bound)
    return sessionmaker(bind=bound, autoflush=False, autocommit=False)


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def init_db(bind: Optional[Engine] = None) -> None:
    """Create tables if they don't exist."""
    from repositories import models  # noqa: F401  Ensures models are registered

    Base.metadata.create_all(bind=bind or engine)

