"""Database engine and session helpers."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import get_database_url
from .models import Base

# -----------------------------------------------------------------------------
# Engine / URL helpers
# -----------------------------------------------------------------------------

def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    """SQLite ignores FOREIGN KEY clauses unless asked per connection."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(url: Optional[str] = None) -> Engine:
    """
    Build an engine for the resolved URL.

    Callers own the returned engine and pass it explicitly to the upsert
    engine and run recorder; there is no module-level pool.
    """
    db_url = url or get_database_url()
    kwargs = {"pool_pre_ping": True, "future": True}
    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in db_url or db_url.rstrip("/").endswith("sqlite:"):
            # every session must see the same in-memory database
            kwargs["poolclass"] = StaticPool
    engine = create_engine(db_url, **kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def create_all(engine: Engine) -> None:
    """Create all tables defined in :mod:`biocat.db.models`."""
    Base.metadata.create_all(engine)


def check_connection(engine: Engine) -> None:
    """Run ``SELECT 1``; raises ``sqlalchemy.exc.OperationalError`` when unreachable."""
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

# -----------------------------------------------------------------------------
# Context managers
# -----------------------------------------------------------------------------

@contextmanager
def session_scope(engine: Engine) -> Iterator[Session]:
    """
    Provide a transactional scope around a series of operations.

    Usage:
        with session_scope(engine) as s:
            s.execute(...)
    """
    session: Session = make_session_factory(engine)()
    try:
        yield session
        session.commit()
    except BaseException:
        # KeyboardInterrupt included: an interrupted transaction never half-commits
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "create_db_engine",
    "create_all",
    "check_connection",
    "make_session_factory",
    "session_scope",
    "Base",
]
