"""Database engine, session factory and declarative base."""

import uuid
from datetime import datetime, timezone
from typing import Any, Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from pbi_analyzer.config import settings

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_uuid(value: Any) -> Optional[str]:
    """Canonical string form of a UUID, or None if the value is not one."""
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        return None


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(url: str) -> Engine:
    """Create an engine usable from the worker threads."""
    connect_args = {}
    if url.startswith("sqlite"):
        # Jobs run on pool threads, each with its own session
        connect_args = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(url, pool_pre_ping=True, connect_args=connect_args)
    if url.startswith("sqlite"):
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


engine = make_engine(settings.DATABASE_URL)
SessionLocal = make_session_factory(engine)


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a request-scoped session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
