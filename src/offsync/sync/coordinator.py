"""Reconciliation between the sync queue and a remote service.

A run claims a batch of pending items and applies them one at a time. Each
outcome is recorded through the queue, never thrown across the loop, so a
single bad item cannot abort the batch. Runs are single-flight: a trigger
that arrives while a run is in progress returns immediately.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import anyio

from offsync.cache.manager import CacheManager
from offsync.errors import InvalidTransition, ItemNotFound, RemoteFailure, StorageUnavailable
from offsync.records import SyncItem, SyncSession, SyncStatus, as_timedelta, utc_now
from offsync.sync.queue import SyncQueue
from offsync.sync.remote import Applied, ApplyResult, Conflict, Failure, RemoteService
from offsync.sync.sessions import SyncSessionLog

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50
DEFAULT_REMOTE_TIMEOUT = 10.0
DEFAULT_STALE_CLAIM_TIMEOUT = 300.0


class CoordinatorState(str, Enum):
    """Whether a reconciliation run is in progress."""

    IDLE = "idle"
    RUNNING = "running"


def cache_key(entity_type: str, entity_id: str) -> str:
    """Cache key under which an entity's resolved state is stored."""
    return f"{entity_type}:{entity_id}"


class SyncCoordinator:
    """Drives reconciliation runs and conflict resolution."""

    def __init__(
        self,
        queue: SyncQueue,
        remote: RemoteService,
        sessions: SyncSessionLog,
        cache: CacheManager | None = None,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        remote_timeout: float = DEFAULT_REMOTE_TIMEOUT,
        stale_claim_timeout: float | timedelta = DEFAULT_STALE_CLAIM_TIMEOUT,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the coordinator.

        Args:
            queue: Queue to drain
            remote: Remote collaborator that applies mutations
            sessions: Where run reports are persisted
            cache: Cache that receives adopted remote snapshots, if any
            batch_size: Maximum items claimed per run
            remote_timeout: Seconds allowed for each remote call
            stale_claim_timeout: Age after which a ``syncing`` claim is reclaimed
            clock: Source of the current time
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._queue = queue
        self._remote = remote
        self._sessions = sessions
        self._cache = cache
        self.batch_size = batch_size
        self.remote_timeout = remote_timeout
        self.stale_claim_timeout = as_timedelta(stale_claim_timeout)
        self._clock = clock
        self._state = CoordinatorState.IDLE
        self._state_lock = threading.Lock()
        self._cancel_requested = False
        self._last_session: SyncSession | None = None

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def last_session(self) -> SyncSession | None:
        """Report of the most recent completed run in this process."""
        return self._last_session

    def cancel(self) -> None:
        """Ask the current run to stop before its next remote call.

        Items already claimed stay ``syncing`` and are reclaimed by a later
        run once their claim goes stale.
        """
        with self._state_lock:
            if self._state is CoordinatorState.RUNNING:
                self._cancel_requested = True

    async def run(self) -> SyncSession | None:
        """Run one reconciliation pass.

        Returns:
            The closed session, or None if a run was already in progress

        Raises:
            StorageUnavailable: If the queue cannot be read at the start of the run
        """
        with self._state_lock:
            if self._state is CoordinatorState.RUNNING:
                logger.debug("Sync run already in progress, skipping trigger")
                return None
            self._state = CoordinatorState.RUNNING
            self._cancel_requested = False

        try:
            return await self._run_once()
        finally:
            with self._state_lock:
                self._state = CoordinatorState.IDLE
                self._cancel_requested = False

    async def _run_once(self) -> SyncSession:
        self._queue.recover_stale(self.stale_claim_timeout)
        session = self._sessions.open()
        logger.info(f"Sync session {session.id} started")

        try:
            items = self._queue.dequeue_pending(self.batch_size)
        except StorageUnavailable:
            self._close_session(session, [], {}, cancelled=False)
            raise
        processed: list[str] = []
        counts: Counter[str] = Counter()
        cancelled = False

        for item in items:
            if self._cancel_requested:
                cancelled = True
                logger.info(
                    f"Sync session {session.id} cancelled with "
                    f"{len(items) - len(processed)} claimed items left"
                )
                break
            status = await self._process(item)
            processed.append(item.id)
            counts[status.value] += 1

        closed = self._close_session(session, processed, dict(counts), cancelled)
        self._last_session = closed
        logger.info(
            f"Sync session {session.id} finished: {len(processed)} items, "
            f"{dict(counts) or 'nothing to do'}"
        )
        return closed

    async def _process(self, item: SyncItem) -> SyncStatus:
        """Apply one item remotely and record the outcome."""
        result = await self._apply(item)
        try:
            if isinstance(result, Applied):
                updated = self._queue.mark_synced(item.id, revision=item.revision)
            elif isinstance(result, Conflict):
                updated = self._queue.mark_conflict(item.id, result.remote_snapshot)
            else:
                updated = self._queue.mark_failed(
                    item.id, reason=result.reason, revision=item.revision
                )
        except (StorageUnavailable, ItemNotFound, InvalidTransition) as e:
            # Left syncing; the stale-claim pass of a later run picks it up
            logger.error(f"Could not record outcome for sync item {item.id}: {e}")
            return SyncStatus.SYNCING
        logger.debug(f"Sync item {item.id} -> {updated.status.value}")
        return updated.status

    async def _apply(self, item: SyncItem) -> ApplyResult:
        try:
            with anyio.fail_after(self.remote_timeout):
                return await self._remote.apply(
                    item.entity_type,
                    item.entity_id,
                    item.operation,
                    item.payload,
                    self.remote_timeout,
                )
        except TimeoutError:
            return Failure(reason=f"Timed out after {self.remote_timeout}s")
        except RemoteFailure as e:
            return Failure(reason=str(e))
        except Exception as e:
            # Any remote-side error becomes a retryable failure for this item only
            logger.exception(f"Remote apply raised for sync item {item.id}")
            return Failure(reason=f"{type(e).__name__}: {e}")

    def _close_session(
        self,
        session: SyncSession,
        processed: list[str],
        counts: dict[str, int],
        cancelled: bool,
    ) -> SyncSession:
        try:
            return self._sessions.close(session, processed, counts, cancelled=cancelled)
        except StorageUnavailable as e:
            logger.warning(f"Could not persist sync session {session.id}: {e}")
            return SyncSession(
                id=session.id,
                started_at=session.started_at,
                ended_at=self._clock(),
                item_ids=tuple(processed),
                summary_counts=counts,
                cancelled=cancelled,
            )

    def resolve_conflict(self, item_id: str, use_local: bool) -> SyncItem:
        """Settle a conflict explicitly.

        Args:
            item_id: The conflicting item
            use_local: True to send the local payload again; False to adopt
                the remote snapshot as the new local state

        Returns:
            The item that now carries the entity's state: the requeued item,
            a newer outstanding item that supersedes it, or the adopted item

        Raises:
            ItemNotFound: If the item does not exist
            InvalidTransition: If the item is not in conflict
        """
        item = self._queue.get(item_id)
        if item is None:
            raise ItemNotFound(item_id)
        if item.status is not SyncStatus.CONFLICT:
            raise InvalidTransition(f"Item {item_id} is {item.status.value}, not in conflict")

        if use_local:
            newer = self._queue.pending_for(item.entity_type, item.entity_id)
            if newer is not None:
                # A later local edit is already queued and carries the newest state
                self._queue.discard(item.id)
                logger.info(f"Conflict {item_id} superseded by outstanding item {newer.id}")
                return newer
            logger.info(f"Conflict {item_id} resolved with local payload, requeued")
            return self._queue.requeue(item.id)

        snapshot = item.conflict_payload
        resolved = self._queue.adopt_remote(item.id, snapshot)
        if self._cache is not None:
            _write_through(self._cache, item, snapshot)
        logger.info(f"Conflict {item_id} resolved with remote snapshot")
        return resolved

    def prune(self, retention: float | timedelta) -> int:
        """Delete synced items older than the retention window."""
        return self._queue.prune_synced(retention)

    async def run_forever(
        self,
        interval: float,
        retention: float | timedelta | None = None,
        ready: Callable[[], Awaitable[bool]] | None = None,
    ) -> None:
        """Trigger a run every ``interval`` seconds until cancelled.

        Shares the single-flight guard with manual :meth:`run` calls, so a
        periodic tick that lands during a manual run is skipped.

        Args:
            interval: Seconds between ticks
            retention: Prune synced items older than this after each run
            ready: Checked before each tick; the tick is skipped when it
                returns False (e.g. while the server is unreachable)
        """
        while True:
            if ready is not None and not await ready():
                logger.debug("Remote not ready, skipping sync tick")
            else:
                try:
                    await self.run()
                    if retention is not None:
                        self.prune(retention)
                except StorageUnavailable as e:
                    logger.warning(f"Sync tick failed, retrying in {interval}s: {e}")
            await anyio.sleep(interval)


def _write_through(cache: CacheManager, item: SyncItem, snapshot: Any) -> None:
    key = cache_key(item.entity_type, item.entity_id)
    if snapshot is None:
        # Deleted remotely
        cache.remove(key)
    else:
        cache.put(key, snapshot)
