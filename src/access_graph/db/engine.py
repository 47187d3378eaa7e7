"""
access_graph.db.engine

SQLAlchemy engine + session helpers.

Rules:
- Settings are defined ONLY in access_graph.settings.Settings (Pydantic).
- This module does NOT read env vars directly.
- Supports SQLite (dev/tests) and PostgreSQL via psycopg (prod).
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

from access_graph.settings import Settings, get_settings

from .base import metadata


def _is_sqlite_memory(url: URL) -> bool:
    db = (url.database or "").strip()
    if not db or db == ":memory:":
        return True
    if db.startswith("file:") and (url.query or {}).get("mode") == "memory":
        return True
    return False


def _ensure_sqlite_parent_dir(url: URL) -> None:
    db = (url.database or "").strip()
    if not db or db == ":memory:" or db.startswith("file:"):
        return

    path = Path(db)
    if not path.is_absolute():
        path = (Path.cwd() / path).resolve()
    path.parent.mkdir(parents=True, exist_ok=True)


def _create_sqlite_engine(url: URL, settings: Settings) -> Engine:
    _ensure_sqlite_parent_dir(url)
    is_memory = _is_sqlite_memory(url)

    engine = create_engine(
        url,
        echo=settings.database_echo,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool if is_memory else NullPool,
    )

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_conn, _):
        cur = dbapi_conn.cursor()
        try:
            cur.execute("PRAGMA foreign_keys=ON")
            cur.execute(f"PRAGMA busy_timeout={int(settings.database_sqlite_busy_timeout_ms)}")
            if not is_memory:
                cur.execute(f"PRAGMA journal_mode={settings.database_sqlite_journal_mode}")
        finally:
            cur.close()

    # pysqlite's implicit BEGIN handling breaks SAVEPOINTs; emit BEGIN ourselves.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_conn, _):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def _create_postgres_engine(url: URL, settings: Settings) -> Engine:
    if url.drivername in {"postgresql", "postgres"}:
        url = url.set(drivername="postgresql+psycopg")
    if not url.drivername.startswith("postgresql+psycopg"):
        raise ValueError("For Postgres, use postgresql+psycopg://... (psycopg is required).")

    return create_engine(
        url,
        echo=settings.database_echo,
        pool_pre_ping=True,
        pool_use_lifo=True,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=settings.database_pool_timeout,
        pool_recycle=settings.database_pool_recycle,
    )


def build_engine(settings: Settings | None = None) -> Engine:
    settings = settings or get_settings()
    if not settings.database_url:
        raise ValueError("Settings.database_url is required.")
    url = make_url(settings.database_url)
    backend = url.get_backend_name()

    if backend == "sqlite":
        return _create_sqlite_engine(url, settings)
    if backend == "postgresql":
        return _create_postgres_engine(url, settings)
    raise ValueError("Unsupported database backend. Use sqlite:// or postgresql+psycopg://.")


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(SessionLocal: sessionmaker[Session]) -> Iterator[Session]:
    """Standard session scope with commit/rollback."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()


def create_schema(engine: Engine) -> None:
    """Create every access graph table that does not exist yet."""
    metadata.create_all(engine)


def assert_tables_exist(
    engine: Engine,
    required_tables: Iterable[str] | None = None,
    *,
    schema: str | None = None,
) -> None:
    inspector = inspect(engine)
    tables = list(required_tables) if required_tables is not None else list(metadata.tables)
    missing = [t for t in tables if not inspector.has_table(t, schema=schema)]
    if missing:
        raise RuntimeError(
            f"Missing required tables: {', '.join(missing)}. "
            "Run `access-graph init-db` before using the access graph."
        )


__all__ = [
    "assert_tables_exist",
    "build_engine",
    "build_sessionmaker",
    "create_schema",
    "session_scope",
]
