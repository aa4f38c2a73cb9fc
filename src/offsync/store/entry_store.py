"""Durable key-value store over SQLAlchemy.

The entry store is the only component that touches persistent storage. It
speaks in records (:class:`~offsync.records.CacheEntry`,
:class:`~offsync.records.SyncItem`, :class:`~offsync.records.SyncSession`)
and never hands out ORM objects or sessions.

Every operation runs in its own short transaction. Scans page through a
table with keyset pagination so that no transaction stays open while the
caller consumes results.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

from sqlalchemy import Engine, delete, func, select, tuple_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from offsync.errors import StorageUnavailable
from offsync.store.models import (
    CacheEntryRow,
    StoreBase,
    SyncItemRow,
    SyncSessionRow,
    to_utc,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")

DEFAULT_PAGE_SIZE = 200


class Table(str, Enum):
    """Logical tables held by the entry store."""

    CACHE_ENTRIES = "cache_entries"
    SYNC_ITEMS = "sync_items"
    SYNC_SESSIONS = "sync_sessions"


_ROW_TYPES: dict[Table, Any] = {
    Table.CACHE_ENTRIES: CacheEntryRow,
    Table.SYNC_ITEMS: SyncItemRow,
    Table.SYNC_SESSIONS: SyncSessionRow,
}


def _primary_key(model: type[StoreBase]) -> Any:
    return model.__mapper__.primary_key[0]


def _record_key(table: Table, record: Any) -> str:
    if table is Table.CACHE_ENTRIES:
        return str(record.key)
    return str(record.id)


class Scan(Generic[R]):
    """Lazy, finite, restartable view over matching records.

    Each call to ``iter()`` re-queries the store from the beginning; the
    scan is a query, not a live cursor.
    """

    def __init__(self, factory: Callable[[], Iterator[R]]):
        self._factory = factory

    def __iter__(self) -> Iterator[R]:
        return self._factory()


class EntryStore:
    """Atomic get/put/delete/scan over the durable tables."""

    def __init__(self, engine: Engine, page_size: int = DEFAULT_PAGE_SIZE):
        """Initialize the entry store.

        Args:
            engine: SQLAlchemy engine for the backing database
            page_size: Rows fetched per transaction while scanning
        """
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        self.page_size = page_size

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        """Open a session with a transaction, mapping driver errors."""
        try:
            with self._session_factory() as session, session.begin():
                yield session
        except SQLAlchemyError as e:
            logger.warning(f"Storage operation failed: {e}")
            raise StorageUnavailable(str(e)) from e

    def put(self, table: Table, key: str, record: Any) -> None:
        """Insert or overwrite a record atomically.

        Args:
            table: Target table
            key: Record key; must match the record's own key or id
            record: The record to store

        Raises:
            ValueError: If the key does not match the record
            StorageUnavailable: If the write fails
        """
        if _record_key(table, record) != key:
            raise ValueError(f"Key '{key}' does not match record key")
        row = _ROW_TYPES[table].from_record(record)
        with self._transaction() as session:
            session.merge(row)

    def put_many(self, table: Table, records: Iterable[Any]) -> None:
        """Insert or overwrite several records in one transaction."""
        rows = [_ROW_TYPES[table].from_record(record) for record in records]
        if not rows:
            return
        with self._transaction() as session:
            for row in rows:
                session.merge(row)

    def update_where(
        self,
        table: Table,
        expected: Mapping[str, Mapping[str, Any]],
        values: Mapping[str, Any],
    ) -> set[str]:
        """Conditionally update several records in one transaction.

        Each record is updated only while its stored columns still hold the
        expected values, so a record another writer changed since it was read
        is left alone. The check and the write are a single UPDATE statement.

        Args:
            table: Target table
            expected: Column values each record must still hold, by key
            values: Column values to set on the records that match

        Returns:
            Keys of the records that were updated
        """
        if not expected:
            return set()
        model = _ROW_TYPES[table]
        pk = _primary_key(model)
        for name in values:
            if name not in model.__table__.columns:
                raise ValueError(f"Unknown column '{name}' for {model.__tablename__}")
        assignments = {
            name: to_utc(value) if isinstance(value, datetime) else value
            for name, value in values.items()
        }

        updated: set[str] = set()
        with self._transaction() as session:
            for key, columns in expected.items():
                stmt = (
                    update(model)
                    .where(pk == key, *self._filter_clauses(model, columns))
                    .values(assignments)
                    .execution_options(synchronize_session=False)
                )
                if session.execute(stmt).rowcount:
                    updated.add(key)
        return updated

    def get(self, table: Table, key: str) -> Any | None:
        """Get a record by key.

        Returns:
            The record, or None if absent
        """
        with self._transaction() as session:
            row = session.get(_ROW_TYPES[table], key)
            return row.to_record() if row is not None else None

    def delete(self, table: Table, key: str) -> bool:
        """Delete a record by key. Deleting an absent key is not an error.

        Returns:
            True if a row was removed
        """
        model = _ROW_TYPES[table]
        with self._transaction() as session:
            result = session.execute(delete(model).where(_primary_key(model) == key))
            return bool(result.rowcount)

    def delete_many(self, table: Table, keys: Collection[str]) -> int:
        """Delete several records in one transaction.

        Returns:
            Number of rows removed
        """
        if not keys:
            return 0
        model = _ROW_TYPES[table]
        with self._transaction() as session:
            result = session.execute(
                delete(model).where(_primary_key(model).in_(list(keys)))
            )
            return int(result.rowcount or 0)

    def clear(self, table: Table) -> int:
        """Delete every record in a table.

        Returns:
            Number of rows removed
        """
        with self._transaction() as session:
            result = session.execute(delete(_ROW_TYPES[table]))
            return int(result.rowcount or 0)

    def count(self, table: Table, filters: Mapping[str, Any] | None = None) -> int:
        """Count records matching equality filters."""
        model = _ROW_TYPES[table]
        stmt = select(func.count()).select_from(model)
        for clause in self._filter_clauses(model, filters):
            stmt = stmt.where(clause)
        with self._transaction() as session:
            return int(session.execute(stmt).scalar_one())

    def scan(
        self,
        table: Table,
        predicate: Callable[[Any], bool] | None = None,
        *,
        filters: Mapping[str, Any] | None = None,
        order_by: str | None = None,
    ) -> Scan[Any]:
        """Scan a table lazily.

        Args:
            table: Table to scan
            predicate: Optional test applied to each decoded record
            filters: Column equality filters evaluated by the database; a
                collection value matches any of its members
            order_by: Column to order by (primary key when omitted)

        Returns:
            A restartable iterable of matching records
        """
        model = _ROW_TYPES[table]
        if order_by is not None and order_by not in model.__table__.columns:
            raise ValueError(f"Unknown column '{order_by}' for table {table.value}")
        return Scan(lambda: self._iter_pages(model, predicate, filters, order_by))

    def _iter_pages(
        self,
        model: Any,
        predicate: Callable[[Any], bool] | None,
        filters: Mapping[str, Any] | None,
        order_by: str | None,
    ) -> Iterator[Any]:
        pk = _primary_key(model)
        order_col = getattr(model, order_by) if order_by else None
        clauses = self._filter_clauses(model, filters)
        cursor: tuple[Any, ...] | None = None

        while True:
            stmt = select(model)
            for clause in clauses:
                stmt = stmt.where(clause)
            if order_col is None:
                if cursor is not None:
                    stmt = stmt.where(pk > cursor[0])
                stmt = stmt.order_by(pk)
            else:
                if cursor is not None:
                    stmt = stmt.where(tuple_(order_col, pk) > tuple_(*cursor))
                stmt = stmt.order_by(order_col, pk)
            stmt = stmt.limit(self.page_size)

            with self._transaction() as session:
                rows = list(session.execute(stmt).scalars())
                page = [row.to_record() for row in rows]
                if rows:
                    last = rows[-1]
                    pk_value = getattr(last, pk.key)
                    if order_col is None:
                        cursor = (pk_value,)
                    else:
                        cursor = (getattr(last, order_col.key), pk_value)

            for record in page:
                if predicate is None or predicate(record):
                    yield record

            if len(page) < self.page_size:
                return

    @staticmethod
    def _filter_clauses(model: Any, filters: Mapping[str, Any] | None) -> list[Any]:
        clauses = []
        for name, value in (filters or {}).items():
            if name not in model.__table__.columns:
                raise ValueError(f"Unknown column '{name}' for {model.__tablename__}")
            column = getattr(model, name)
            if isinstance(value, list | tuple | set | frozenset):
                clauses.append(column.in_(list(value)))
            else:
                clauses.append(column == value)
        return clauses
