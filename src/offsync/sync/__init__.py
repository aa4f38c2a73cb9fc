"""Offline mutation queue and its reconciliation with a remote service."""

from offsync.sync.coordinator import CoordinatorState, SyncCoordinator, cache_key
from offsync.sync.queue import SyncQueue
from offsync.sync.remote import (
    Applied,
    ApplyResult,
    Conflict,
    Failure,
    HttpRemoteService,
    RemoteService,
)
from offsync.sync.sessions import SyncSessionLog

__all__ = [
    "Applied",
    "ApplyResult",
    "Conflict",
    "CoordinatorState",
    "Failure",
    "HttpRemoteService",
    "RemoteService",
    "SyncCoordinator",
    "SyncQueue",
    "SyncSessionLog",
    "cache_key",
]
