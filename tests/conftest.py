"""Shared fixtures: simulated clock, in-memory store and a fake remote."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import anyio
import pytest
from sqlalchemy import Engine

from offsync.records import SyncOperation
from offsync.store.database import create_memory_engine, init_store_db
from offsync.store.entry_store import EntryStore
from offsync.sync.remote import Applied, ApplyResult


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs: float) -> None:
        self.now += timedelta(seconds=seconds, **kwargs)


@dataclass
class RemoteCall:
    entity_type: str
    entity_id: str
    operation: SyncOperation
    payload: Any
    timeout: float


@dataclass
class FakeRemote:
    """Scriptable RemoteService.

    ``results`` maps entity ids to an ApplyResult, an exception to raise, or
    a callable producing either. Unlisted entities are applied.
    """

    results: dict[str, Any] = field(default_factory=dict)
    calls: list[RemoteCall] = field(default_factory=list)
    gate: anyio.Event | None = None
    started: anyio.Event | None = None
    delay: float = 0.0

    async def __aenter__(self) -> FakeRemote:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None

    async def apply(
        self,
        entity_type: str,
        entity_id: str,
        operation: SyncOperation,
        payload: Any,
        timeout: float,
    ) -> ApplyResult:
        self.calls.append(RemoteCall(entity_type, entity_id, operation, payload, timeout))
        if self.started is not None:
            self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await anyio.sleep(self.delay)

        outcome = self.results.get(entity_id, Applied(remote_snapshot=payload))
        if callable(outcome):
            outcome = outcome()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    @property
    def entity_ids(self) -> list[str]:
        return [call.entity_id for call in self.calls]


@pytest.fixture
def clock() -> ManualClock:
    """A simulated clock starting at a fixed instant."""
    return ManualClock()


@pytest.fixture
def engine() -> Engine:
    """Create an in-memory SQLite database for testing."""
    engine = create_memory_engine()
    init_store_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine: Engine) -> EntryStore:
    """Entry store over the in-memory database."""
    return EntryStore(engine)


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()
