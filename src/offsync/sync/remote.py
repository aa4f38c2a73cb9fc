"""Remote collaborator interface and its HTTP implementation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import httpx
from pydantic import BaseModel, Field, ValidationError

from offsync.client import create_client
from offsync.config import Settings
from offsync.records import SyncOperation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Applied:
    """The remote accepted the mutation."""

    remote_snapshot: Any = None


@dataclass(frozen=True)
class Conflict:
    """The remote holds a concurrent edit; nothing was applied."""

    remote_snapshot: Any = None


@dataclass(frozen=True)
class Failure:
    """The remote could not be reached or rejected the request."""

    reason: str


ApplyResult = Applied | Conflict | Failure


class RemoteService(Protocol):
    """Anything that can apply a queued mutation remotely."""

    async def apply(
        self,
        entity_type: str,
        entity_id: str,
        operation: SyncOperation,
        payload: Any,
        timeout: float,
    ) -> ApplyResult:
        """Apply one mutation and report the outcome."""
        ...


class ApplyRequest(BaseModel):
    """Body of POST /api/sync/apply."""

    entity_type: str = Field(..., description="Logical record type")
    entity_id: str = Field(..., description="Logical record id")
    operation: SyncOperation = Field(..., description="create, update or delete")
    payload: Any = Field(None, description="Data to apply; null for delete")


class ApplyResponse(BaseModel):
    """Response of POST /api/sync/apply (also used for 409 bodies)."""

    status: Literal["applied", "conflict"] = "applied"
    snapshot: Any = Field(None, description="Remote state after apply, or the conflicting state")
    detail: str | None = None


class HttpRemoteService:
    """RemoteService over HTTP.

    2xx responses map to :class:`Applied`, 409 to :class:`Conflict`, and every
    other status or transport error to :class:`Failure`.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        path: str = "/api/sync/apply",
        settings: Settings | None = None,
    ) -> None:
        """Initialize the remote service.

        Args:
            client: Client to use. If None, one is created on enter and closed on exit.
            path: Endpoint path for apply requests
            settings: Server and credentials for the created client
        """
        self._client = client
        self._settings = settings
        self._own_client = client is None
        self.path = path

    async def __aenter__(self) -> HttpRemoteService:
        """Enter async context manager."""
        if self._client is None:
            self._client = create_client(self._settings)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        """Exit async context manager."""
        if self._own_client and self._client:
            await self._client.aclose()
            self._client = None

    async def apply(
        self,
        entity_type: str,
        entity_id: str,
        operation: SyncOperation,
        payload: Any,
        timeout: float,
    ) -> ApplyResult:
        if not self._client:
            raise RuntimeError("HttpRemoteService not initialized - use as context manager")

        request = ApplyRequest(
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            payload=payload,
        )
        try:
            response = await self._client.post(
                self.path, json=request.model_dump(mode="json"), timeout=timeout
            )
        except httpx.HTTPError as e:
            return Failure(reason=f"{type(e).__name__}: {e}")

        if response.status_code == 409:
            body = self._parse(response)
            if body is None:
                return Failure(reason="Malformed conflict response")
            return Conflict(remote_snapshot=body.snapshot)

        if response.is_success:
            body = self._parse(response)
            if body is None:
                return Failure(reason="Malformed apply response")
            if body.status == "conflict":
                return Conflict(remote_snapshot=body.snapshot)
            return Applied(remote_snapshot=body.snapshot)

        return Failure(reason=f"HTTP {response.status_code}: {response.text[:200]}")

    @staticmethod
    def _parse(response: httpx.Response) -> ApplyResponse | None:
        if not response.content:
            return ApplyResponse()
        try:
            return ApplyResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.warning(f"Could not parse apply response: {e}")
            return None
