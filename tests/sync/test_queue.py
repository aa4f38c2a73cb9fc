"""Tests for the sync queue."""

import threading
from datetime import timedelta
from unittest.mock import patch

import pytest

from offsync.errors import InvalidTransition, ItemNotFound
from offsync.records import SyncOperation, SyncStatus
from offsync.store.database import get_store_engine, init_store_db
from offsync.store.entry_store import EntryStore
from offsync.sync.queue import SyncQueue


@pytest.fixture
def queue(store, clock):
    """Sync queue with a short backoff for tests."""
    return SyncQueue(store, max_retries=3, backoff_base=2.0, backoff_max=10.0, clock=clock)


class TestEnqueue:
    """Tests for recording local mutations."""

    def test_enqueue_create(self, queue, clock):
        """Test that a new mutation is queued as pending."""
        item = queue.enqueue("note", "1", SyncOperation.CREATE, {"title": "a"})

        assert item.status is SyncStatus.PENDING
        assert item.payload == {"title": "a"}
        assert item.local_modified_at == clock()
        assert item.revision == 1
        assert queue.get(item.id) == item

    def test_update_requires_payload(self, queue):
        """Test that create and update need a payload."""
        with pytest.raises(ValueError, match="requires a payload"):
            queue.enqueue("note", "1", SyncOperation.UPDATE)

    def test_delete_drops_payload(self, queue):
        """Test that delete items carry no payload."""
        item = queue.enqueue("note", "1", SyncOperation.DELETE, {"ignored": True})

        assert item.payload is None

    def test_unserializable_payload(self, queue):
        """Test that the payload must be serializable."""
        with pytest.raises(ValueError):
            queue.enqueue("note", "1", SyncOperation.CREATE, {"bad": object()})
        assert queue.counts()[SyncStatus.PENDING] == 0

    def test_coalesces_updates(self, queue, clock):
        """Test that two updates before a dequeue leave one item with the latest payload."""
        first = queue.enqueue("note", "1", SyncOperation.UPDATE, {"title": "x"})
        clock.advance(5)
        second = queue.enqueue("note", "1", SyncOperation.UPDATE, {"title": "y"})

        pending = list(queue.list_by_status(SyncStatus.PENDING))

        assert [item.id for item in pending] == [first.id]
        assert second.id == first.id
        assert pending[0].payload == {"title": "y"}
        assert pending[0].revision == 2
        assert pending[0].local_modified_at == clock()

    def test_coalesce_replaces_operation(self, queue):
        """Test that a delete after a create replaces the operation."""
        queue.enqueue("note", "1", SyncOperation.CREATE, {"title": "x"})
        item = queue.enqueue("note", "1", SyncOperation.DELETE)

        assert item.operation is SyncOperation.DELETE
        assert item.payload is None

    def test_distinct_entities_not_coalesced(self, queue):
        """Test that different entities get their own items."""
        queue.enqueue("note", "1", SyncOperation.CREATE, {"t": 1})
        queue.enqueue("note", "2", SyncOperation.CREATE, {"t": 2})
        queue.enqueue("task", "1", SyncOperation.CREATE, {"t": 3})

        assert queue.counts()[SyncStatus.PENDING] == 3

    def test_coalesce_into_syncing_item(self, queue):
        """Test that an edit during a run updates the in-flight item."""
        original = queue.enqueue("note", "1", SyncOperation.UPDATE, {"title": "x"})
        queue.dequeue_pending(1)

        item = queue.enqueue("note", "1", SyncOperation.UPDATE, {"title": "y"})

        assert item.id == original.id
        assert item.status is SyncStatus.SYNCING
        assert item.revision == 2

    def test_new_item_after_synced(self, queue):
        """Test that a settled item is never coalesced into."""
        first = queue.enqueue("note", "1", SyncOperation.CREATE, {"title": "x"})
        queue.dequeue_pending(1)
        queue.mark_synced(first.id)

        second = queue.enqueue("note", "1", SyncOperation.UPDATE, {"title": "y"})

        assert second.id != first.id
        assert queue.get(first.id).status is SyncStatus.SYNCED


class TestDequeue:
    """Tests for claiming pending items."""

    def test_end_to_end_synced(self, queue):
        """Test enqueue, claim and mark synced."""
        item = queue.enqueue("note", "1", SyncOperation.CREATE, {"title": "a"})

        claimed = queue.dequeue_pending(1)
        assert [c.id for c in claimed] == [item.id]
        assert claimed[0].status is SyncStatus.SYNCING
        assert queue.get(item.id).status is SyncStatus.SYNCING

        queue.mark_synced(item.id)

        synced = list(queue.list_by_status(SyncStatus.SYNCED))
        assert [s.id for s in synced] == [item.id]
        assert synced[0].synced_at is not None

    def test_oldest_first(self, queue, clock):
        """Test that items are claimed in local modification order."""
        for entity_id in ["c", "a", "b"]:
            queue.enqueue("note", entity_id, SyncOperation.CREATE, {"id": entity_id})
            clock.advance(1)

        claimed = queue.dequeue_pending(2)

        assert [item.entity_id for item in claimed] == ["c", "a"]
        assert [item.entity_id for item in queue.dequeue_pending(10)] == ["b"]

    def test_coalesced_item_moves_back_in_order(self, queue, clock):
        """Test that coalescing updates the ordering timestamp."""
        queue.enqueue("note", "1", SyncOperation.CREATE, {"v": 1})
        clock.advance(1)
        queue.enqueue("note", "2", SyncOperation.CREATE, {"v": 1})
        clock.advance(1)
        queue.enqueue("note", "1", SyncOperation.UPDATE, {"v": 2})

        assert [item.entity_id for item in queue.dequeue_pending(2)] == ["2", "1"]

    def test_empty_and_zero_limit(self, queue):
        """Test claiming from an empty queue or with no room."""
        assert queue.dequeue_pending(5) == []
        queue.enqueue("note", "1", SyncOperation.CREATE, {"v": 1})
        assert queue.dequeue_pending(0) == []

    def test_claimed_items_not_claimed_again(self, queue):
        """Test that a claim excludes already syncing items."""
        queue.enqueue("note", "1", SyncOperation.CREATE, {"v": 1})

        assert len(queue.dequeue_pending(5)) == 1
        assert queue.dequeue_pending(5) == []

    def test_concurrent_dequeue_claims_disjoint_sets(self, tmp_path, clock):
        """Test that parallel claims never return the same item twice."""
        engine = get_store_engine(tmp_path / "queue.db")
        init_store_db(engine)
        try:
            shared = SyncQueue(EntryStore(engine), clock=clock)
            for i in range(40):
                shared.enqueue("note", str(i), SyncOperation.CREATE, {"i": i})

            results = []
            lock = threading.Lock()

            def worker():
                while True:
                    batch = shared.dequeue_pending(3)
                    if not batch:
                        return
                    with lock:
                        results.extend(item.id for item in batch)

            threads = [threading.Thread(target=worker) for _ in range(4)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

            assert len(results) == 40
            assert len(set(results)) == 40
        finally:
            engine.dispose()

    def test_separate_queues_never_claim_the_same_item(self, tmp_path, clock):
        """Test that a claim racing another process's claim loses cleanly."""
        db_path = tmp_path / "shared.db"
        app_engine = get_store_engine(db_path)
        cli_engine = get_store_engine(db_path)
        init_store_db(app_engine)
        try:
            app_store = EntryStore(app_engine)
            app_queue = SyncQueue(app_store, clock=clock)
            cli_queue = SyncQueue(EntryStore(cli_engine), clock=clock)
            first = app_queue.enqueue("note", "1", SyncOperation.CREATE, {"v": 1})
            clock.advance(1)
            second = app_queue.enqueue("note", "2", SyncOperation.CREATE, {"v": 2})

            real_scan = app_store.scan
            cli_claims = []

            def scan_then_race(*args, **kwargs):
                # The other process claims after this queue has read its candidates
                rows = list(real_scan(*args, **kwargs))
                cli_claims.extend(cli_queue.dequeue_pending(1))
                return iter(rows)

            with patch.object(app_store, "scan", side_effect=scan_then_race):
                app_claims = app_queue.dequeue_pending(5)

            assert [item.id for item in cli_claims] == [first.id]
            assert [item.id for item in app_claims] == [second.id]
            assert cli_queue.get(first.id).status is SyncStatus.SYNCING
            assert app_queue.get(second.id).status is SyncStatus.SYNCING
        finally:
            app_engine.dispose()
            cli_engine.dispose()

    def test_claim_skips_item_coalesced_since_read(self, queue, store):
        """Test that a pending item edited after the scan is left for the next run."""
        item = queue.enqueue("note", "1", SyncOperation.UPDATE, {"v": 1})
        real_scan = store.scan
        edits = [{"v": 2}]

        def scan_then_edit(*args, **kwargs):
            rows = list(real_scan(*args, **kwargs))
            if edits:
                # enqueue scans again through this patch
                queue.enqueue("note", "1", SyncOperation.UPDATE, edits.pop())
            return iter(rows)

        with patch.object(store, "scan", side_effect=scan_then_edit):
            assert queue.dequeue_pending(5) == []

        reclaimed = queue.dequeue_pending(5)
        assert [c.id for c in reclaimed] == [item.id]
        assert reclaimed[0].payload == {"v": 2}
        assert reclaimed[0].revision == 2


class TestFailures:
    """Tests for retries and backoff."""

    def test_failure_returns_to_pending_with_backoff(self, queue, clock):
        """Test that a failed item waits before it can be claimed again."""
        item = queue.enqueue("note", "1", SyncOperation.CREATE, {"v": 1})
        queue.dequeue_pending(1)

        failed = queue.mark_failed(item.id, "timeout")

        assert failed.status is SyncStatus.PENDING
        assert failed.retry_count == 1
        assert failed.last_error == "timeout"
        assert failed.next_attempt_at == clock() + timedelta(seconds=2)
        assert queue.dequeue_pending(1) == []

        clock.advance(2)
        assert [c.id for c in queue.dequeue_pending(1)] == [item.id]

    def test_backoff_doubles_and_caps(self, queue):
        """Test the exponential delay schedule."""
        delays = [queue.backoff_delay(n).total_seconds() for n in range(1, 6)]

        assert delays == [2.0, 4.0, 8.0, 10.0, 10.0]

    def test_gives_up_after_max_retries(self, queue, clock):
        """Test that an item stays failed once retries are exhausted."""
        item = queue.enqueue("note", "1", SyncOperation.CREATE, {"v": 1})

        for _ in range(3):
            queue.dequeue_pending(1)
            assert queue.mark_failed(item.id, "boom").status is SyncStatus.PENDING
            clock.advance(60)

        queue.dequeue_pending(1)
        final = queue.mark_failed(item.id, "boom")

        assert final.status is SyncStatus.FAILED
        assert final.retry_count == 4
        assert queue.dequeue_pending(1) == []

    @pytest.mark.parametrize(
        ("max_retries", "expected"),
        [
            (0, [SyncStatus.FAILED]),
            (1, [SyncStatus.PENDING, SyncStatus.FAILED]),
            (2, [SyncStatus.PENDING, SyncStatus.PENDING, SyncStatus.FAILED]),
        ],
    )
    def test_retry_count_equal_to_limit_still_retries(self, store, clock, max_retries, expected):
        """Test that an item fails only once retry_count exceeds max_retries."""
        queue = SyncQueue(store, max_retries=max_retries, backoff_max=1.0, clock=clock)
        item = queue.enqueue("note", "1", SyncOperation.CREATE, {"v": 1})

        statuses = []
        for _ in expected:
            clock.advance(5)
            queue.dequeue_pending(1)
            updated = queue.mark_failed(item.id, "boom")
            statuses.append((updated.retry_count, updated.status))

        assert statuses == list(enumerate(expected, start=1))

    def test_requeue_failed(self, store, clock):
        """Test that requeue resets retries."""
        queue = SyncQueue(store, max_retries=0, clock=clock)
        item = queue.enqueue("note", "1", SyncOperation.CREATE, {"v": 1})
        queue.dequeue_pending(1)
        queue.mark_failed(item.id, "boom")

        requeued = queue.requeue(item.id)

        assert requeued.status is SyncStatus.PENDING
        assert requeued.retry_count == 0
        assert requeued.last_error is None
        assert [c.id for c in queue.dequeue_pending(1)] == [item.id]

    def test_success_clears_last_error(self, queue, clock):
        """Test that a later success clears the stored error."""
        item = queue.enqueue("note", "1", SyncOperation.CREATE, {"v": 1})
        queue.dequeue_pending(1)
        queue.mark_failed(item.id, "boom")
        clock.advance(5)
        queue.dequeue_pending(1)

        assert queue.mark_synced(item.id).last_error is None


class TestRevisions:
    """Tests for edits that land while an item is in flight."""

    def test_stale_success_returns_to_pending(self, queue):
        """Test that a success for an older revision does not mark the newer edit synced."""
        item = queue.enqueue("note", "1", SyncOperation.UPDATE, {"title": "x"})
        sent = queue.dequeue_pending(1)[0]
        queue.enqueue("note", "1", SyncOperation.UPDATE, {"title": "y"})

        result = queue.mark_synced(item.id, revision=sent.revision)

        assert result.status is SyncStatus.PENDING
        assert result.payload == {"title": "y"}
        assert [c.payload for c in queue.dequeue_pending(1)] == [{"title": "y"}]

    def test_stale_failure_does_not_count(self, queue):
        """Test that a failure for an older revision leaves retries untouched."""
        item = queue.enqueue("note", "1", SyncOperation.UPDATE, {"title": "x"})
        sent = queue.dequeue_pending(1)[0]
        queue.enqueue("note", "1", SyncOperation.UPDATE, {"title": "y"})

        result = queue.mark_failed(item.id, "boom", revision=sent.revision)

        assert result.status is SyncStatus.PENDING
        assert result.retry_count == 0
        assert result.next_attempt_at is None

    def test_current_revision_marks_synced(self, queue):
        """Test that a matching revision settles the item."""
        item = queue.enqueue("note", "1", SyncOperation.UPDATE, {"title": "x"})
        sent = queue.dequeue_pending(1)[0]

        assert queue.mark_synced(item.id, revision=sent.revision).status is SyncStatus.SYNCED


class TestConflicts:
    """Tests for conflict bookkeeping."""

    def test_conflict_keeps_local_payload(self, queue):
        """Test that both payloads are kept."""
        item = queue.enqueue("note", "1", SyncOperation.UPDATE, {"title": "local"})
        queue.dequeue_pending(1)

        conflict = queue.mark_conflict(item.id, {"title": "remote"})

        assert conflict.status is SyncStatus.CONFLICT
        assert conflict.payload == {"title": "local"}
        assert conflict.conflict_payload == {"title": "remote"}
        assert queue.dequeue_pending(1) == []

    def test_requeue_conflict(self, queue):
        """Test resending the local payload after a conflict."""
        item = queue.enqueue("note", "1", SyncOperation.UPDATE, {"title": "local"})
        queue.dequeue_pending(1)
        queue.mark_conflict(item.id, {"title": "remote"})

        requeued = queue.requeue(item.id)

        assert requeued.status is SyncStatus.PENDING
        assert requeued.payload == {"title": "local"}
        assert requeued.conflict_payload is None

    def test_requeue_blocked_by_newer_item(self, queue):
        """Test that requeue refuses when a newer edit is outstanding."""
        item = queue.enqueue("note", "1", SyncOperation.UPDATE, {"title": "local"})
        queue.dequeue_pending(1)
        queue.mark_conflict(item.id, {"title": "remote"})
        queue.enqueue("note", "1", SyncOperation.UPDATE, {"title": "newer"})

        with pytest.raises(InvalidTransition, match="already outstanding"):
            queue.requeue(item.id)

    def test_adopt_remote(self, queue):
        """Test accepting the remote snapshot."""
        item = queue.enqueue("note", "1", SyncOperation.UPDATE, {"title": "local"})
        queue.dequeue_pending(1)
        queue.mark_conflict(item.id, {"title": "remote"})

        adopted = queue.adopt_remote(item.id, {"title": "remote"})

        assert adopted.status is SyncStatus.SYNCED
        assert adopted.payload == {"title": "remote"}
        assert adopted.conflict_payload is None

    def test_discard_settled_item(self, queue):
        """Test deleting a conflicting item."""
        item = queue.enqueue("note", "1", SyncOperation.UPDATE, {"title": "local"})
        queue.dequeue_pending(1)
        queue.mark_conflict(item.id, None)

        assert queue.discard(item.id) is True
        assert queue.discard(item.id) is False
        assert queue.get(item.id) is None

    def test_discard_outstanding_rejected(self, queue):
        """Test that pending items cannot be discarded."""
        item = queue.enqueue("note", "1", SyncOperation.UPDATE, {"title": "local"})

        with pytest.raises(InvalidTransition):
            queue.discard(item.id)


class TestInvalidTransitions:
    """Tests for transitions that are not allowed."""

    def test_mark_synced_requires_syncing(self, queue):
        """Test that a pending item cannot be marked synced."""
        item = queue.enqueue("note", "1", SyncOperation.CREATE, {"v": 1})

        with pytest.raises(InvalidTransition, match="expected one of: syncing"):
            queue.mark_synced(item.id)

    def test_requeue_pending_rejected(self, queue):
        """Test that only failed or conflicting items can be requeued."""
        item = queue.enqueue("note", "1", SyncOperation.CREATE, {"v": 1})

        with pytest.raises(InvalidTransition):
            queue.requeue(item.id)

    def test_adopt_remote_requires_conflict(self, queue):
        """Test that adopt_remote only applies to conflicts."""
        item = queue.enqueue("note", "1", SyncOperation.CREATE, {"v": 1})

        with pytest.raises(InvalidTransition):
            queue.adopt_remote(item.id, {})

    def test_unknown_item(self, queue):
        """Test that unknown ids raise ItemNotFound."""
        with pytest.raises(ItemNotFound, match="not found"):
            queue.mark_synced("missing")
        with pytest.raises(ItemNotFound):
            queue.mark_failed("missing")
        with pytest.raises(ItemNotFound):
            queue.requeue("missing")


class TestMaintenance:
    """Tests for stale claim recovery, pruning and queries."""

    def test_recover_stale_claims(self, queue, clock):
        """Test that old syncing items return to pending."""
        stale = queue.enqueue("note", "1", SyncOperation.CREATE, {"v": 1})
        queue.dequeue_pending(1)
        clock.advance(120)
        fresh = queue.enqueue("note", "2", SyncOperation.CREATE, {"v": 2})
        queue.dequeue_pending(1)

        recovered = queue.recover_stale(timeout=60)

        assert recovered == 1
        assert queue.get(stale.id).status is SyncStatus.PENDING
        assert queue.get(stale.id).claimed_at is None
        assert queue.get(fresh.id).status is SyncStatus.SYNCING

    def test_prune_synced(self, queue, clock):
        """Test that only synced items past retention are deleted."""
        old = queue.enqueue("note", "1", SyncOperation.CREATE, {"v": 1})
        queue.dequeue_pending(1)
        queue.mark_synced(old.id)
        clock.advance(hours=2)
        recent = queue.enqueue("note", "2", SyncOperation.CREATE, {"v": 2})
        queue.dequeue_pending(1)
        queue.mark_synced(recent.id)
        pending = queue.enqueue("note", "3", SyncOperation.CREATE, {"v": 3})

        removed = queue.prune_synced(timedelta(hours=1))

        assert removed == 1
        assert queue.get(old.id) is None
        assert queue.get(recent.id) is not None
        assert queue.get(pending.id) is not None

    def test_list_by_status_is_restartable(self, queue):
        """Test that a listing can be iterated more than once."""
        queue.enqueue("note", "1", SyncOperation.CREATE, {"v": 1})
        listing = queue.list_by_status(SyncStatus.PENDING)

        assert len(list(listing)) == 1
        queue.enqueue("note", "2", SyncOperation.CREATE, {"v": 2})
        assert len(list(listing)) == 2

    def test_counts_and_pending_for(self, queue):
        """Test status counts and per-entity lookup."""
        item = queue.enqueue("note", "1", SyncOperation.CREATE, {"v": 1})
        queue.enqueue("note", "2", SyncOperation.CREATE, {"v": 2})
        queue.dequeue_pending(1)

        counts = queue.counts()

        assert counts[SyncStatus.PENDING] == 1
        assert counts[SyncStatus.SYNCING] == 1
        assert counts[SyncStatus.FAILED] == 0
        assert queue.pending_for("note", "1").id == item.id
        assert queue.pending_for("note", "9") is None

    def test_negative_max_retries(self, store):
        """Test that max_retries must not be negative."""
        with pytest.raises(ValueError):
            SyncQueue(store, max_retries=-1)
