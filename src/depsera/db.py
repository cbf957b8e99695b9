"""Database connection management for the Depsera catalog.

The manifest sync engine never reaches for a global session: callers build an
engine with :func:`create_db_engine`, open sessions with :func:`session_scope`
(or their own ``Session``) and pass them to the stores and orchestrator.

Environment Variables:
    DEPSERA_DATABASE_URI: Catalog connection string (see ``depsera.config``)
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from depsera.config import get_database_uri


_engine: Engine | None = None


def _configure_sqlite(engine: Engine) -> None:
    """Enable foreign keys and hand transaction control to SQLAlchemy.

    pysqlite's implicit BEGIN handling breaks SAVEPOINT, which the sync
    orchestrator relies on for per-entry rollback.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # noqa: ARG001
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_db_engine(uri: Optional[str] = None, **kwargs) -> Engine:
    """Create an engine for ``uri`` (defaults to the configured catalog URI)."""
    uri = uri or get_database_uri()
    if uri.startswith("sqlite"):
        engine = create_engine(uri, **kwargs)
        _configure_sqlite(engine)
        return engine
    kwargs.setdefault("pool_pre_ping", True)
    kwargs.setdefault("pool_size", 5)
    kwargs.setdefault("max_overflow", 10)
    return create_engine(uri, **kwargs)


def get_engine() -> Engine:
    """Get or create the process-wide engine used by workers and the CLI."""
    global _engine
    if _engine is None:
        _engine = create_db_engine()
    return _engine


def dispose_engine() -> None:
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None


@contextmanager
def session_scope(engine: Optional[Engine] = None) -> Generator[Session, None, None]:
    """Session that commits on success and rolls back on any exception."""
    SessionLocal = sessionmaker(bind=engine or get_engine(), expire_on_commit=False)
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
