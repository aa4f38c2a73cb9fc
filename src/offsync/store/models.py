"""SQLAlchemy models for the durable tier."""

from __future__ import annotations

import base64
import json
from datetime import UTC, datetime
from typing import Any, ClassVar

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy import Enum as SqlEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from offsync.records import CacheEntry, SyncItem, SyncOperation, SyncSession, SyncStatus

# Marker for bytes payloads inside JSON text
_BYTES_TAG = "__offsync_bytes__"


def _encode_default(value: Any) -> Any:
    if isinstance(value, bytes | bytearray):
        return {_BYTES_TAG: base64.b64encode(bytes(value)).decode("ascii")}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode_hook(obj: dict[str, Any]) -> Any:
    if len(obj) == 1 and _BYTES_TAG in obj:
        return base64.b64decode(obj[_BYTES_TAG])
    return obj


def dump_payload(value: Any) -> str:
    """Serialize an opaque payload to JSON text.

    Bytes (top-level or nested) are wrapped in a tagged base64 envelope.

    Raises:
        ValueError: If the value cannot be serialized
    """
    try:
        return json.dumps(value, default=_encode_default)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Payload is not serializable: {e}") from e


def load_payload(text: str | None) -> Any:
    """Inverse of :func:`dump_payload`; ``None`` stays ``None``."""
    if text is None:
        return None
    return json.loads(text, object_hook=_decode_hook)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back out
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def to_utc(value: datetime | None) -> datetime | None:
    """Convert an aware datetime to UTC before it is stored.

    SQLite keeps only the wall time, which :func:`_aware` reads back as UTC.
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC)


class StoreBase(DeclarativeBase):
    """Base class for all durable-tier SQLAlchemy models."""

    # Type annotation map for common types
    type_annotation_map: ClassVar[dict[type, Any]] = {
        datetime: DateTime(timezone=True),
    }


class CacheEntryRow(StoreBase):
    """Durable cache entry."""

    __tablename__ = "cache_entries"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)  # JSON
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False, index=True)

    def to_record(self) -> CacheEntry:
        return CacheEntry(
            key=self.key,
            value=load_payload(self.value),
            created_at=_aware(self.created_at),
            expires_at=_aware(self.expires_at),
        )

    @classmethod
    def from_record(cls, entry: CacheEntry) -> CacheEntryRow:
        return cls(
            key=entry.key,
            value=dump_payload(entry.value),
            created_at=to_utc(entry.created_at),
            expires_at=to_utc(entry.expires_at),
        )


class SyncItemRow(StoreBase):
    """Queued local mutation."""

    __tablename__ = "sync_items"
    __table_args__ = (Index("ix_sync_items_entity", "entity_type", "entity_id"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    operation: Mapped[SyncOperation] = mapped_column(
        SqlEnum(
            SyncOperation,
            name="sync_operation",
            values_callable=lambda obj: [item.value for item in obj],
        ),
        nullable=False,
    )
    payload: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON
    local_modified_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
    status: Mapped[SyncStatus] = mapped_column(
        SqlEnum(
            SyncStatus,
            name="sync_status",
            values_callable=lambda obj: [item.value for item in obj],
        ),
        nullable=False,
        default=SyncStatus.PENDING,
        index=True,
    )
    conflict_payload: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON
    retry_count: Mapped[int] = mapped_column(default=0, nullable=False)
    revision: Mapped[int] = mapped_column(default=1, nullable=False)
    claimed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    synced_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def to_record(self) -> SyncItem:
        return SyncItem(
            id=self.id,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            operation=self.operation,
            payload=load_payload(self.payload),
            local_modified_at=_aware(self.local_modified_at),
            status=self.status,
            conflict_payload=load_payload(self.conflict_payload),
            retry_count=self.retry_count,
            revision=self.revision,
            claimed_at=_aware(self.claimed_at),
            next_attempt_at=_aware(self.next_attempt_at),
            last_error=self.last_error,
            synced_at=_aware(self.synced_at),
        )

    @classmethod
    def from_record(cls, item: SyncItem) -> SyncItemRow:
        return cls(
            id=item.id,
            entity_type=item.entity_type,
            entity_id=item.entity_id,
            operation=item.operation,
            payload=None if item.payload is None else dump_payload(item.payload),
            local_modified_at=to_utc(item.local_modified_at),
            status=item.status,
            conflict_payload=(
                None if item.conflict_payload is None else dump_payload(item.conflict_payload)
            ),
            retry_count=item.retry_count,
            revision=item.revision,
            claimed_at=to_utc(item.claimed_at),
            next_attempt_at=to_utc(item.next_attempt_at),
            last_error=item.last_error,
            synced_at=to_utc(item.synced_at),
        )


class SyncSessionRow(StoreBase):
    """Report row for one reconciliation run."""

    __tablename__ = "sync_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    started_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
    ended_at: Mapped[datetime | None] = mapped_column(nullable=True)
    item_ids: Mapped[str] = mapped_column(Text, nullable=False, default="[]")  # JSON array
    summary_counts: Mapped[str] = mapped_column(
        Text, nullable=False, default="{}"
    )  # JSON object
    cancelled: Mapped[bool] = mapped_column(default=False, nullable=False)

    def to_record(self) -> SyncSession:
        return SyncSession(
            id=self.id,
            started_at=_aware(self.started_at),
            ended_at=_aware(self.ended_at),
            item_ids=tuple(json.loads(self.item_ids)),
            summary_counts=json.loads(self.summary_counts),
            cancelled=self.cancelled,
        )

    @classmethod
    def from_record(cls, session: SyncSession) -> SyncSessionRow:
        return cls(
            id=session.id,
            started_at=to_utc(session.started_at),
            ended_at=to_utc(session.ended_at),
            item_ids=json.dumps(list(session.item_ids)),
            summary_counts=json.dumps(dict(session.summary_counts)),
            cancelled=session.cancelled,
        )
