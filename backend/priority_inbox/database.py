"""Database engine and sessions.

Sync engine + Session only: the sync engine, prioritization worker, Celery tasks
and the FastAPI routes all use blocking SQLAlchemy sessions (psycopg on Postgres).
"""

from __future__ import annotations

import random
import time
from typing import Callable, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool

from .config import settings


def _is_sqlite(url: URL) -> bool:
    return url.drivername.startswith("sqlite")


def _with_driver(url: URL, drivername: str) -> URL:
    """Return a copy of URL with a different drivername."""
    return url.set(drivername=drivername)


raw_url: URL = make_url(settings.database_url)
is_transaction_pooler: bool = (raw_url.port == 6543)

connect_args: dict = {}
if _is_sqlite(raw_url):
    # SQLite: NullPool so each thread gets its own connection.
    # timeout is in seconds at the sqlite driver level.
    timeout_s = max(0.0, float(settings.sqlite_busy_timeout_ms) / 1000.0)
    connect_args = {"check_same_thread": False, "timeout": timeout_s}
    engine = create_engine(
        raw_url,
        connect_args=connect_args,
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        """
        Improve concurrency characteristics for SQLite.
        - WAL: allows concurrent readers while a writer is active
        - busy_timeout: wait for locks instead of failing immediately
        """
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.execute(f"PRAGMA busy_timeout={int(settings.sqlite_busy_timeout_ms)};")
            cursor.execute("PRAGMA foreign_keys=ON;")
        finally:
            cursor.close()
else:
    # If user provided plain postgresql://..., force psycopg.
    sync_url = raw_url
    if sync_url.drivername == "postgresql":
        sync_url = _with_driver(sync_url, "postgresql+psycopg")
    # Supavisor transaction mode does not support prepared statements.
    if is_transaction_pooler:
        connect_args = {"prepare_threshold": None}
    engine = create_engine(
        sync_url,
        connect_args=connect_args,
        pool_pre_ping=True,
        pool_size=max(1, settings.db_pool_size),
        max_overflow=max(0, settings.db_max_overflow),
        pool_timeout=max(1, settings.db_pool_timeout_s),
        pool_recycle=max(0, settings.db_pool_recycle_s),
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    """
    Create tables on SQLite (local dev, tests).

    We avoid implicit `create_all()` on Postgres; schema is managed via Alembic.
    """
    if not _is_sqlite(raw_url):
        return
    from .models import Base
    Base.metadata.create_all(bind=engine)


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a DB session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _is_sqlite_locked_error(exc: BaseException) -> bool:
    msg = str(exc).lower()
    return "database is locked" in msg or "sqlite_busy" in msg


def commit_with_retry(
    db: Session,
    write: Callable[[], None],
    *,
    max_retries: int = 6,
    base_sleep_s: float = 0.05,
) -> None:
    """
    Apply `write` and commit. SQLite can transiently raise 'database is locked'
    under concurrent access; on that error roll back, re-apply `write` and retry
    with exponential backoff + jitter. `write` must be safe to re-apply: the
    rollback discards whatever it staged.
    """
    attempt = 0
    while True:
        try:
            write()
            db.commit()
            return
        except OperationalError as e:
            db.rollback()
            if attempt >= max_retries or not _is_sqlite_locked_error(e):
                raise
            sleep_s = min(2.0, base_sleep_s * (2 ** attempt)) + random.uniform(0, 0.05)
            time.sleep(sleep_s)
            attempt += 1
