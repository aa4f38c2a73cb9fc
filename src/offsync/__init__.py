"""offsync - offline-capable local cache with a durable sync queue."""

__version__ = "0.1.0"
