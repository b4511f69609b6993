"""
Database configuration and session management.
"""
import os
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def _engine_kwargs(database_url: str) -> dict:
    kwargs = {
        "pool_pre_ping": True,  # Verify connections before using
        "echo": os.getenv("SQL_ECHO", "false").lower() == "true",
    }
    if database_url.startswith("sqlite"):
        # Executors touch the queue from the event loop and from APScheduler jobs
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_size"] = 10
        kwargs["max_overflow"] = 20
    return kwargs


def get_engine() -> Engine:
    """Get or create the database engine."""
    global _engine, _SessionLocal

    if _engine is None:
        from fantasy_sync.core.config import settings
        _engine = create_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)

    return _engine


def get_session_factory() -> sessionmaker:
    """Get the session factory bound to the application engine."""
    get_engine()
    return _SessionLocal


def init_db(engine: Optional[Engine] = None) -> None:
    """Create the task queue tables if they do not exist."""
    from fantasy_sync.models.models import Base
    Base.metadata.create_all(bind=engine or get_engine(), checkfirst=True)
