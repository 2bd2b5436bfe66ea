"""Database helpers for EventDesk."""

from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .config import settings

DATABASE_URL = settings.database_url


def _install_sqlite_hooks(engine: Engine) -> None:
    """Make every SQLite transaction start with ``BEGIN IMMEDIATE``.

    pysqlite normally defers ``BEGIN`` until the first write, so two writers
    can both read a count and then race to insert. Taking the write lock at
    the start of the transaction serialises read-then-write units of work;
    the losing connection waits for ``busy_timeout`` and then sees the
    winner's committed rows.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(url: str, **kwargs) -> Engine:
    """Create an engine with the transaction semantics admission relies on."""
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", settings.sqlite_busy_timeout_seconds)
        engine = create_engine(url, connect_args=connect_args, future=True, **kwargs)
        _install_sqlite_hooks(engine)
        return engine
    return create_engine(url, future=True, pool_pre_ping=True, **kwargs)


def create_session_factory(bind: Engine) -> sessionmaker:
    # Plain (not thread-scoped) sessions: every unit of work gets its own
    # session and connection, even when units run back to back in one thread.
    return sessionmaker(
        bind=bind,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )


engine = create_db_engine(DATABASE_URL)
SessionLocal = create_session_factory(engine)


@contextmanager
def get_session():
    """Context manager returning a SQLAlchemy session.

    The session is one unit of work: committed on a clean exit, rolled back
    when the block raises.
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
