"""Object storage adapter for raw résumé documents."""
from __future__ import annotations

import logging
from typing import Protocol

import httpx

from jobstream.config import ObjectStorageSettings, settings as app_settings
from jobstream.domain import ResumeDocumentRef
from jobstream.errors import ErrorKind, StoreError

logger = logging.getLogger(__name__)


class ObjectStorage(Protocol):
    async def fetch_raw_document(self, ref: ResumeDocumentRef) -> bytes: ...


class HttpObjectStorage:
    """Tenant-scoped HTTP object storage (``GET {base}/files/{id}``)."""

    def __init__(
        self,
        config: ObjectStorageSettings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or app_settings.storage
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=httpx.Timeout(self.config.timeout_seconds),
            headers={"x-tenant-id": self.config.tenant_id},
            transport=transport,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_raw_document(self, ref: ResumeDocumentRef) -> bytes:
        """Download the bytes of a stored document.

        Raises:
            StoreError: NotFound for 404, Unavailable for network errors and 5xx,
                Conflict for any other rejection
        """
        try:
            response = await self._client.get(
                f"/files/{ref.file_id}",
                headers={"x-user-id": ref.profile_id},
            )
        except httpx.TransportError as e:
            raise StoreError(ErrorKind.UNAVAILABLE, f"object storage unreachable: {e}") from e

        if response.status_code == 404:
            raise StoreError(ErrorKind.NOT_FOUND, f"object {ref.file_id} not found")
        if response.status_code >= 500 or response.status_code == 429:
            raise StoreError(ErrorKind.UNAVAILABLE, f"object storage error (HTTP {response.status_code})")
        if response.status_code >= 400:
            raise StoreError(ErrorKind.CONFLICT, f"object storage rejected request (HTTP {response.status_code})")

        logger.debug(f"Fetched {len(response.content)} bytes for object {ref.file_id}")
        return response.content


class MemoryObjectStorage:
    """Object storage over a dict, for tests and local runs."""

    def __init__(self, objects: dict[str, bytes] | None = None) -> None:
        self.objects = dict(objects or {})

    async def fetch_raw_document(self, ref: ResumeDocumentRef) -> bytes:
        try:
            return self.objects[ref.file_id]
        except KeyError:
            raise StoreError(ErrorKind.NOT_FOUND, f"object {ref.file_id} not found") from None
