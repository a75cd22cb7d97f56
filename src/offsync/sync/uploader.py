"""
Remote upload of queued mutations.

``dispatch_upload`` routes a record to the uploader method for its kind
through a table that must cover every MutationKind. ``HttpUploader`` is the
httpx implementation used against the sync API.
"""

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from offsync.core.protocols import RemoteUploader
from offsync.core.types import MutationKind, QueuedMutation

logger = logging.getLogger(__name__)


_UPLOAD_METHODS: dict[MutationKind, str] = {
    MutationKind.INVENTORY: "upload_inventory",
    MutationKind.PREDICTION: "upload_prediction",
    MutationKind.SALE: "upload_sale",
    MutationKind.WASTE: "upload_waste",
}

_missing = set(MutationKind) - set(_UPLOAD_METHODS)
if _missing:
    raise ImportError(f"No upload method registered for: {sorted(k.value for k in _missing)}")


async def dispatch_upload(uploader: RemoteUploader, record: QueuedMutation) -> None:
    """Send ``record`` through the uploader method matching its kind."""
    method = getattr(uploader, _UPLOAD_METHODS[record.kind])
    await method(record.id, record.payload)


class UploadError(Exception):
    """The remote service rejected or failed an upload."""

    def __init__(self, message: str, status_code: int | None = None, response: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


SYNC_ENDPOINT = "/sync"

DEFAULT_ENDPOINTS: dict[MutationKind, str] = {
    MutationKind.INVENTORY: "/inventory",
    MutationKind.PREDICTION: "/predictions",
    MutationKind.SALE: SYNC_ENDPOINT,
    MutationKind.WASTE: SYNC_ENDPOINT,
}


class HttpUploader:
    """
    Upload mutations to the remote API over HTTP.

    Every request carries the account's ``userId`` and an ``Idempotency-Key``
    header with the record id, so the server can discard redeliveries.
    Records routed to the generic ``/sync`` endpoint are wrapped as
    ``{"userId", "id", "data_type", "operation", "data_payload"}``; the item
    endpoints (``/inventory``, ``/predictions``) take the payload fields flat,
    next to ``userId``.

    Example:
        async with HttpUploader("https://api.example.com/api", user_id="store-7") as uploader:
            await uploader.upload_sale(record.id, record.payload)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        user_id: str | None = None,
        endpoints: dict[MutationKind, str] | None = None,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the uploader.

        Args:
            base_url: Base URL of the sync API
            timeout: Request timeout in seconds
            user_id: Account the records belong to; required by the API
            endpoints: Path per mutation kind (defaults to DEFAULT_ENDPOINTS)
            headers: Extra headers sent with every request
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.user_id = user_id
        self.endpoints = {**DEFAULT_ENDPOINTS, **(endpoints or {})}
        self._headers = headers or {}
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "HttpUploader":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def connect(self) -> None:
        """Initialize the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers,
                timeout=self.timeout,
                transport=self._transport,
            )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _post(self, kind: MutationKind, record_id: str, payload: Any) -> None:
        body = self.build_body(kind, record_id, payload)
        if self._client is None:
            await self.connect()

        try:
            response = await self._client.post(
                self.endpoints[kind],
                json=body,
                headers={"Idempotency-Key": record_id},
            )
        except httpx.TimeoutException as e:
            raise UploadError(f"Upload of {kind.value} {record_id} timed out: {e}")
        except httpx.TransportError as e:
            raise UploadError(f"Failed to reach {self.base_url}: {e}")

        if response.status_code >= 400:
            raise UploadError(
                f"Upload of {kind.value} {record_id} rejected: {response.status_code}",
                status_code=response.status_code,
                response=response.text,
            )
        logger.debug(f"Uploaded {kind.value} record {record_id}")

    def build_body(self, kind: MutationKind, record_id: str, payload: Any) -> dict:
        """
        JSON body for ``kind`` at its configured endpoint.

        Raises:
            UploadError: If no user_id is configured, or an item endpoint
                receives a payload that is not an object
        """
        if not self.user_id:
            raise UploadError(f"Cannot upload {kind.value} {record_id}: user_id is not configured")

        if self.endpoints[kind] == SYNC_ENDPOINT:
            return {
                "userId": self.user_id,
                "id": record_id,
                "data_type": kind.value,
                "operation": "create",
                "data_payload": payload,
            }

        if not isinstance(payload, Mapping):
            raise UploadError(
                f"Cannot upload {kind.value} {record_id} to {self.endpoints[kind]}: "
                f"payload must be an object, got {type(payload).__name__}"
            )
        return {**payload, "userId": self.user_id}

    async def upload_inventory(self, record_id: str, payload: Any) -> None:
        await self._post(MutationKind.INVENTORY, record_id, payload)

    async def upload_prediction(self, record_id: str, payload: Any) -> None:
        await self._post(MutationKind.PREDICTION, record_id, payload)

    async def upload_sale(self, record_id: str, payload: Any) -> None:
        await self._post(MutationKind.SALE, record_id, payload)

    async def upload_waste(self, record_id: str, payload: Any) -> None:
        await self._post(MutationKind.WASTE, record_id, payload)


__all__ = ["DEFAULT_ENDPOINTS", "SYNC_ENDPOINT", "HttpUploader", "UploadError", "dispatch_upload"]
