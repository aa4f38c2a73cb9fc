"""Two-tier cache with per-entry expiration."""

from offsync.cache.manager import CacheManager, CacheStats, CacheStrategy, PutResult

__all__ = [
    "CacheManager",
    "CacheStats",
    "CacheStrategy",
    "PutResult",
]
