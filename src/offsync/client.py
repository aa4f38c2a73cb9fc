"""HTTP access to the sync server described by :class:`Settings`."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

import httpx

from offsync.config import Settings

logger = logging.getLogger(__name__)

HEALTH_TIMEOUT = 2.0
ONLINE_CACHE_TTL = timedelta(seconds=30)

# Last health check result per server URL
_health_checks: dict[str, tuple[bool, datetime]] = {}


def server_headers(settings: Settings) -> dict[str, str]:
    """Headers sent with every request to the sync server."""
    if settings.api_key:
        return {"X-API-Key": settings.api_key}
    return {}


def create_client(
    settings: Settings | None = None, timeout: float | None = None
) -> httpx.AsyncClient:
    """Create an async client for the sync server.

    Args:
        settings: Where to connect and how to authenticate. Loaded from the
            config file when None.
        timeout: Request timeout in seconds; ``settings.remote_timeout`` when None

    Returns:
        An unopened client; use it as an async context manager
    """
    settings = settings or Settings.from_config()
    return httpx.AsyncClient(
        base_url=settings.server_url,
        headers=server_headers(settings),
        timeout=settings.remote_timeout if timeout is None else timeout,
    )


async def is_online(settings: Settings | None = None) -> bool:
    """Check whether the sync server answers its health check.

    The result is remembered per server URL for ``ONLINE_CACHE_TTL`` so
    repeated commands do not each pay for a round trip.

    Args:
        settings: Server to check. Loaded from the config file when None.

    Returns:
        True if ``GET /health`` returned 200 within ``HEALTH_TIMEOUT`` seconds
    """
    settings = settings or Settings.from_config()
    previous = _health_checks.get(settings.server_url)
    if previous is not None:
        online, checked_at = previous
        if datetime.now(UTC) - checked_at < ONLINE_CACHE_TTL:
            return online

    try:
        async with create_client(settings, timeout=HEALTH_TIMEOUT) as client:
            response = await client.get("/health")
            online = response.status_code == 200
    except httpx.HTTPError as e:
        logger.debug(f"Health check against {settings.server_url} failed: {e}")
        online = False

    _health_checks[settings.server_url] = (online, datetime.now(UTC))
    return online


def clear_online_cache() -> None:
    """Forget every remembered health check."""
    _health_checks.clear()
