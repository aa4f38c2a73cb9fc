"""Composition root wiring the store, cache and queue from settings."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import Engine

from offsync.cache.manager import CacheManager, CacheStrategy
from offsync.config import Settings
from offsync.store.database import get_store_engine, init_store_db
from offsync.store.entry_store import EntryStore
from offsync.sync.coordinator import SyncCoordinator
from offsync.sync.queue import SyncQueue
from offsync.sync.remote import RemoteService
from offsync.sync.sessions import SyncSessionLog


@dataclass
class Runtime:
    """Explicitly constructed components sharing one database."""

    settings: Settings
    engine: Engine
    store: EntryStore
    cache: CacheManager
    queue: SyncQueue
    sessions: SyncSessionLog

    def coordinator(self, remote: RemoteService) -> SyncCoordinator:
        """Build a coordinator for this runtime around a remote service."""
        return SyncCoordinator(
            self.queue,
            remote,
            self.sessions,
            self.cache,
            batch_size=self.settings.batch_size,
            remote_timeout=self.settings.remote_timeout,
            stale_claim_timeout=self.settings.stale_claim_timeout,
        )

    def close(self) -> None:
        """Release database connections."""
        self.engine.dispose()


def build_runtime(settings: Settings | None = None, engine: Engine | None = None) -> Runtime:
    """Create all components from settings.

    Args:
        settings: Settings to use. If None, loads them from the config file.
        engine: Engine to use. If None, opens the configured database file.

    Returns:
        A ready-to-use Runtime; call ``close()`` when done
    """
    settings = settings or Settings.from_config()
    if engine is None:
        engine = get_store_engine(settings.resolved_database_path())
    init_store_db(engine)

    store = EntryStore(engine)
    cache = CacheManager(
        store,
        strategy=CacheStrategy(settings.cache_strategy),
        default_ttl=settings.default_ttl_seconds,
    )
    queue = SyncQueue(
        store,
        max_retries=settings.max_retries,
        backoff_base=settings.retry_backoff_base,
        backoff_max=settings.retry_backoff_max,
    )
    return Runtime(
        settings=settings,
        engine=engine,
        store=store,
        cache=cache,
        queue=queue,
        sessions=SyncSessionLog(store),
    )
