"""Durable queue of local mutations awaiting reconciliation.

State machine per item::

    PENDING -> SYNCING -> SYNCED
       ^          |
       |          +-----> CONFLICT  (requeue / adopt_remote)
       |          |
       +----------+-----> FAILED    (after max_retries; requeue)

At most one item per ``(entity_type, entity_id)`` is outstanding
(``pending`` or ``syncing``). A new local mutation for an entity with an
outstanding item replaces that item's operation and payload and bumps its
revision; a run holding the older revision cannot mark the newer edit synced.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable, Collection
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from offsync.errors import InvalidTransition, ItemNotFound
from offsync.records import (
    OUTSTANDING_STATUSES,
    SyncItem,
    SyncOperation,
    SyncStatus,
    as_timedelta,
    new_record_id,
    utc_now,
)
from offsync.store.entry_store import EntryStore, Scan, Table
from offsync.store.models import dump_payload

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5
DEFAULT_BACKOFF_BASE = 2.0
DEFAULT_BACKOFF_MAX = 300.0


class SyncQueue:
    """Ordered, durable record of pending local mutations."""

    def __init__(
        self,
        store: EntryStore,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        backoff_max: float = DEFAULT_BACKOFF_MAX,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the sync queue.

        Args:
            store: Entry store holding the sync_items table
            max_retries: Retries allowed after a failure before an item is marked failed
            backoff_base: Seconds to wait after the first failure; doubles per retry
            backoff_max: Upper bound on the retry delay in seconds
            clock: Source of the current time
        """
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self._store = store
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._clock = clock
        # Serialises read-modify-write cycles, including claims
        self._lock = threading.RLock()

    def enqueue(
        self,
        entity_type: str,
        entity_id: str,
        operation: SyncOperation,
        payload: Any = None,
    ) -> SyncItem:
        """Record a local mutation.

        If the entity already has an outstanding item it is coalesced: the
        item takes the new operation and payload and a new revision. An item
        being synced stays ``syncing`` so the in-flight run can settle it.

        Args:
            entity_type: Logical record type, e.g. "note"
            entity_id: Logical record id
            operation: create, update or delete
            payload: Data to apply; ignored for delete

        Returns:
            The new or coalesced item

        Raises:
            ValueError: If a create/update has no payload or the payload is not serializable
        """
        operation = SyncOperation(operation)
        if operation is SyncOperation.DELETE:
            payload = None
        elif payload is None:
            raise ValueError(f"{operation.value} requires a payload")
        else:
            dump_payload(payload)

        with self._lock:
            now = self._clock()
            existing = self.pending_for(entity_type, entity_id)
            if existing is not None:
                item = replace(
                    existing,
                    operation=operation,
                    payload=payload,
                    local_modified_at=now,
                    revision=existing.revision + 1,
                    retry_count=0,
                    next_attempt_at=None,
                    last_error=None,
                )
                logger.debug(
                    f"Coalesced {operation.value} for {entity_type}/{entity_id} "
                    f"into {item.id} (revision {item.revision})"
                )
            else:
                item = SyncItem(
                    id=new_record_id(now),
                    entity_type=entity_type,
                    entity_id=entity_id,
                    operation=operation,
                    payload=payload,
                    local_modified_at=now,
                )
                logger.debug(f"Queued {operation.value} for {entity_type}/{entity_id} as {item.id}")
            self._store.put(Table.SYNC_ITEMS, item.id, item)
            return item

    def dequeue_pending(self, limit: int) -> list[SyncItem]:
        """Claim up to ``limit`` pending items, oldest local change first.

        Claimed items are marked ``syncing`` in a single transaction with a
        conditional update: an item is only taken while it is still pending
        at the revision that was read. Another queue over the same database,
        in this process or another, therefore never claims the same item, and
        only the items this call actually won are returned. Items waiting out
        a retry backoff are skipped.
        """
        if limit <= 0:
            return []
        with self._lock:
            now = self._clock()
            candidates = list(
                itertools.islice(
                    self._store.scan(
                        Table.SYNC_ITEMS,
                        lambda item: item.is_claimable(now),
                        filters={"status": SyncStatus.PENDING},
                        order_by="local_modified_at",
                    ),
                    limit,
                )
            )
            won = self._store.update_where(
                Table.SYNC_ITEMS,
                {
                    item.id: {"status": SyncStatus.PENDING, "revision": item.revision}
                    for item in candidates
                },
                {"status": SyncStatus.SYNCING, "claimed_at": now},
            )
            claimed = [
                replace(item, status=SyncStatus.SYNCING, claimed_at=now)
                for item in candidates
                if item.id in won
            ]
        if len(claimed) < len(candidates):
            logger.debug(f"Lost {len(candidates) - len(claimed)} claims to another queue")
        if claimed:
            logger.debug(f"Claimed {len(claimed)} sync items")
        return claimed

    def mark_synced(self, item_id: str, revision: int | None = None) -> SyncItem:
        """Record a successful remote apply.

        Args:
            item_id: The claimed item
            revision: Revision that was sent; if the item has since been
                coalesced it returns to pending instead

        Returns:
            The updated item
        """
        with self._lock:
            item = self._require(item_id, {SyncStatus.SYNCING})
            now = self._clock()
            if self._superseded(item, revision):
                updated = self._back_to_pending(item)
            else:
                updated = replace(
                    item,
                    status=SyncStatus.SYNCED,
                    claimed_at=None,
                    last_error=None,
                    synced_at=now,
                )
            self._store.put(Table.SYNC_ITEMS, item_id, updated)
            return updated

    def mark_failed(
        self, item_id: str, reason: str | None = None, revision: int | None = None
    ) -> SyncItem:
        """Record a failed remote apply.

        The retry count is incremented and the item returns to pending with
        exponential backoff while it is at most ``max_retries``. Once it
        exceeds ``max_retries`` the item is failed until :meth:`requeue`.

        Returns:
            The updated item
        """
        with self._lock:
            item = self._require(item_id, {SyncStatus.SYNCING})
            if self._superseded(item, revision):
                # The failed attempt carried stale data; the new revision gets a fresh start
                updated = self._back_to_pending(item)
                self._store.put(Table.SYNC_ITEMS, item_id, updated)
                return updated

            now = self._clock()
            retries = item.retry_count + 1
            if retries > self.max_retries:
                updated = replace(
                    item,
                    status=SyncStatus.FAILED,
                    retry_count=retries,
                    claimed_at=None,
                    next_attempt_at=None,
                    last_error=reason,
                )
                logger.warning(
                    f"Sync item {item_id} ({item.entity_type}/{item.entity_id}) failed "
                    f"{retries} times, giving up: {reason}"
                )
            else:
                updated = replace(
                    item,
                    status=SyncStatus.PENDING,
                    retry_count=retries,
                    claimed_at=None,
                    next_attempt_at=now + self.backoff_delay(retries),
                    last_error=reason,
                )
                logger.info(f"Sync item {item_id} failed (attempt {retries}), will retry: {reason}")
            self._store.put(Table.SYNC_ITEMS, item_id, updated)
            return updated

    def mark_conflict(self, item_id: str, remote_snapshot: Any) -> SyncItem:
        """Record a conflict reported by the remote.

        The local payload is kept untouched alongside the remote snapshot
        until the conflict is resolved.
        """
        with self._lock:
            item = self._require(item_id, {SyncStatus.SYNCING})
            updated = replace(
                item,
                status=SyncStatus.CONFLICT,
                conflict_payload=remote_snapshot,
                claimed_at=None,
                next_attempt_at=None,
            )
            self._store.put(Table.SYNC_ITEMS, item_id, updated)
            logger.info(f"Conflict on {item.entity_type}/{item.entity_id} (item {item_id})")
            return updated

    def requeue(self, item_id: str) -> SyncItem:
        """Send a failed or conflicting item again, resetting its retry count.

        Raises:
            InvalidTransition: If the item is not failed/conflict, or a newer
                outstanding item exists for the same entity
        """
        with self._lock:
            item = self._require(item_id, {SyncStatus.FAILED, SyncStatus.CONFLICT})
            newer = self.pending_for(item.entity_type, item.entity_id)
            if newer is not None:
                raise InvalidTransition(
                    f"Item {newer.id} is already outstanding for "
                    f"{item.entity_type}/{item.entity_id}"
                )
            updated = replace(
                item,
                status=SyncStatus.PENDING,
                conflict_payload=None,
                retry_count=0,
                revision=item.revision + 1,
                next_attempt_at=None,
                last_error=None,
            )
            self._store.put(Table.SYNC_ITEMS, item_id, updated)
            return updated

    def adopt_remote(self, item_id: str, remote_snapshot: Any) -> SyncItem:
        """Resolve a conflict in favour of the remote snapshot."""
        with self._lock:
            item = self._require(item_id, {SyncStatus.CONFLICT})
            updated = replace(
                item,
                status=SyncStatus.SYNCED,
                payload=remote_snapshot,
                conflict_payload=None,
                last_error=None,
                synced_at=self._clock(),
            )
            self._store.put(Table.SYNC_ITEMS, item_id, updated)
            return updated

    def discard(self, item_id: str) -> bool:
        """Delete a settled item (synced, conflict or failed).

        Returns:
            True if deleted, False if it did not exist
        """
        with self._lock:
            item = self.get(item_id)
            if item is None:
                return False
            if item.is_outstanding:
                raise InvalidTransition(f"Item {item_id} is still {item.status.value}")
            return self._store.delete(Table.SYNC_ITEMS, item_id)

    def get(self, item_id: str) -> SyncItem | None:
        """Get an item by id, or None."""
        item: SyncItem | None = self._store.get(Table.SYNC_ITEMS, item_id)
        return item

    def pending_for(self, entity_type: str, entity_id: str) -> SyncItem | None:
        """Get the outstanding item for an entity, if any."""
        matches = self._store.scan(
            Table.SYNC_ITEMS,
            filters={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "status": OUTSTANDING_STATUSES,
            },
        )
        return next(iter(matches), None)

    def list_by_status(self, status: SyncStatus) -> Scan[SyncItem]:
        """Iterate items with a status, oldest local change first.

        The result can be iterated repeatedly; each pass re-reads the store.
        """
        return self._store.scan(
            Table.SYNC_ITEMS,
            filters={"status": SyncStatus(status)},
            order_by="local_modified_at",
        )

    def counts(self) -> dict[SyncStatus, int]:
        """Count items per status."""
        return {
            status: self._store.count(Table.SYNC_ITEMS, {"status": status})
            for status in SyncStatus
        }

    def recover_stale(self, timeout: float | timedelta) -> int:
        """Return items stuck in ``syncing`` for longer than ``timeout`` to pending.

        Items are left ``syncing`` when a run is cancelled or the process
        dies mid-run.

        Returns:
            Number of items recovered
        """
        with self._lock:
            cutoff = self._clock() - as_timedelta(timeout)
            stale = [
                self._back_to_pending(item)
                for item in self._store.scan(
                    Table.SYNC_ITEMS,
                    lambda item: item.claimed_at is None or item.claimed_at <= cutoff,
                    filters={"status": SyncStatus.SYNCING},
                )
            ]
            self._store.put_many(Table.SYNC_ITEMS, stale)
        if stale:
            logger.info(f"Recovered {len(stale)} stale sync claims")
        return len(stale)

    def prune_synced(self, retention: float | timedelta) -> int:
        """Delete synced items older than the retention window.

        Returns:
            Number of items deleted
        """
        cutoff = self._clock() - as_timedelta(retention)
        keys: Collection[str] = [
            item.id
            for item in self._store.scan(
                Table.SYNC_ITEMS,
                lambda item: item.synced_at is None or item.synced_at <= cutoff,
                filters={"status": SyncStatus.SYNCED},
            )
        ]
        removed = self._store.delete_many(Table.SYNC_ITEMS, keys)
        if removed:
            logger.info(f"Pruned {removed} synced items")
        return removed

    def backoff_delay(self, retries: int) -> timedelta:
        """Delay before retry number ``retries`` (1-based)."""
        seconds = self.backoff_base * (2 ** max(retries - 1, 0))
        return timedelta(seconds=min(seconds, self.backoff_max))

    def _require(self, item_id: str, allowed: Collection[SyncStatus]) -> SyncItem:
        item = self.get(item_id)
        if item is None:
            raise ItemNotFound(item_id)
        if item.status not in allowed:
            expected = ", ".join(sorted(status.value for status in allowed))
            raise InvalidTransition(
                f"Item {item_id} is {item.status.value}, expected one of: {expected}"
            )
        return item

    @staticmethod
    def _superseded(item: SyncItem, revision: int | None) -> bool:
        return revision is not None and revision != item.revision

    @staticmethod
    def _back_to_pending(item: SyncItem) -> SyncItem:
        return replace(
            item,
            status=SyncStatus.PENDING,
            claimed_at=None,
            next_attempt_at=None,
        )
