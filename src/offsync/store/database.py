"""SQLite engine management for the durable tier."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.pool import StaticPool

from offsync.store.models import StoreBase


def get_store_engine(db_path: Path) -> Engine:
    """Get SQLAlchemy engine for a store database file.

    Args:
        db_path: Path to the SQLite database file

    Returns:
        SQLAlchemy Engine instance with WAL journaling enabled
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        f"sqlite:///{db_path}",
        echo=False,
        connect_args={"check_same_thread": False},
    )
    event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


def create_memory_engine() -> Engine:
    """Get an engine for a private in-memory database.

    All sessions share a single connection so every thread sees the same data.
    """
    return create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


def init_store_db(engine: Engine) -> None:
    """Initialize the store database.

    Creates all tables if they don't exist.
    """
    StoreBase.metadata.create_all(engine)


def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:  # type: ignore[no-untyped-def]
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()
