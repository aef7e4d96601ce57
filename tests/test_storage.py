"""
Tests for the HTTP object storage adapter.
"""

import httpx
import pytest

from jobstream.config import ObjectStorageSettings
from jobstream.domain import ResumeDocumentRef
from jobstream.errors import ErrorKind, StoreError
from jobstream.storage import HttpObjectStorage

REF = ResumeDocumentRef(file_id="f-1", profile_id="p-1")


async def fetch(handler):
    storage = HttpObjectStorage(
        ObjectStorageSettings(base_url="https://files.test", tenant_id="tenant-a"),
        transport=httpx.MockTransport(handler),
    )
    try:
        return await storage.fetch_raw_document(REF)
    finally:
        await storage.aclose()


async def test_fetch_sends_scoping_headers():
    seen = {}

    def handler(request):
        seen.update(path=request.url.path, tenant=request.headers["x-tenant-id"], user=request.headers["x-user-id"])
        return httpx.Response(200, content=b"%PDF-1.4")

    assert await fetch(handler) == b"%PDF-1.4"
    assert seen == {"path": "/files/f-1", "tenant": "tenant-a", "user": "p-1"}


@pytest.mark.parametrize(
    "status_code, kind",
    [(404, ErrorKind.NOT_FOUND), (503, ErrorKind.UNAVAILABLE), (429, ErrorKind.UNAVAILABLE), (403, ErrorKind.CONFLICT)],
)
async def test_error_statuses(status_code, kind):
    with pytest.raises(StoreError) as exc:
        await fetch(lambda request: httpx.Response(status_code))
    assert exc.value.kind == kind


async def test_network_error_is_unavailable():
    def handler(request):
        raise httpx.ConnectError("refused")

    with pytest.raises(StoreError) as exc:
        await fetch(handler)
    assert exc.value.kind == ErrorKind.UNAVAILABLE
