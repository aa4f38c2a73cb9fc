"""Record types shared by the store, the cache and the sync queue."""

from __future__ import annotations

import itertools
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def as_timedelta(value: float | timedelta) -> timedelta:
    """Accept seconds or a timedelta."""
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=value)


# Process-local tiebreaker so ids minted within the same microsecond stay ordered
_id_counter = itertools.count(1)


def new_record_id(now: datetime | None = None) -> str:
    """Mint a time-ordered id.

    Ids sort lexicographically in creation order within a process:
    a zero-padded microsecond timestamp followed by a sequence number.
    """
    now = now or utc_now()
    micros = int(now.timestamp() * 1_000_000)
    return f"{micros:017d}-{next(_id_counter):08d}"


class SyncOperation(str, Enum):
    """Kind of local mutation waiting to be applied remotely."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncStatus(str, Enum):
    """Lifecycle state of a sync item."""

    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    CONFLICT = "conflict"
    FAILED = "failed"


# Statuses that count as "outstanding" for coalescing
OUTSTANDING_STATUSES = frozenset({SyncStatus.PENDING, SyncStatus.SYNCING})


@dataclass(frozen=True)
class CacheEntry:
    """A cached value with its expiration window."""

    key: str
    value: Any
    created_at: datetime
    expires_at: datetime

    def __post_init__(self) -> None:
        if self.expires_at <= self.created_at:
            raise ValueError(
                f"Cache entry '{self.key}' must expire after it is created"
            )

    def is_expired(self, now: datetime) -> bool:
        """Check whether the entry is past its expiry time.

        Args:
            now: The current time

        Returns:
            True once ``now`` is later than ``expires_at``
        """
        return now > self.expires_at

    @property
    def ttl(self) -> timedelta:
        return self.expires_at - self.created_at


@dataclass(frozen=True)
class SyncItem:
    """A queued local mutation for one logical entity."""

    id: str
    entity_type: str
    entity_id: str
    operation: SyncOperation
    payload: Any
    local_modified_at: datetime
    status: SyncStatus = SyncStatus.PENDING
    conflict_payload: Any = None
    retry_count: int = 0
    revision: int = 1
    claimed_at: datetime | None = None
    next_attempt_at: datetime | None = None
    last_error: str | None = None
    synced_at: datetime | None = None

    @property
    def is_outstanding(self) -> bool:
        return self.status in OUTSTANDING_STATUSES

    def is_claimable(self, now: datetime) -> bool:
        """Check whether the item may be claimed by a sync run."""
        if self.status is not SyncStatus.PENDING:
            return False
        return self.next_attempt_at is None or self.next_attempt_at <= now


@dataclass(frozen=True)
class SyncSession:
    """Report of a single reconciliation run."""

    id: str
    started_at: datetime
    ended_at: datetime | None = None
    item_ids: tuple[str, ...] = ()
    summary_counts: Mapping[str, int] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    @property
    def processed(self) -> int:
        return len(self.item_ids)
