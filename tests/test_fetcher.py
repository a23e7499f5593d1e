"""
Tests for document download: retries, timeout, empty and non-PDF bodies.
"""
import asyncio
import logging

import httpx
import pytest

from conftest import DOCUMENT_URL
from receipt_worker.backoff import RetryPolicy
from receipt_worker.errors import EmptyDocumentError, FetchError
from receipt_worker.fetcher import fetch_document


def test_returns_document_bytes(backend, http, retry, sleeps):
    content = asyncio.run(fetch_document(DOCUMENT_URL, client=http, retry=retry))
    assert content == backend.document
    assert sleeps.calls == []


def test_retries_transient_status_then_succeeds(backend, http, retry, sleeps):
    statuses = iter([503, 200])
    backend.document_response = lambda request: httpx.Response(next(statuses), content=b"%PDF-1.7")

    assert asyncio.run(fetch_document(DOCUMENT_URL, client=http, retry=retry)) == b"%PDF-1.7"
    assert sleeps.calls == [2.0]


def test_unsuccessful_status_raises_after_retries(backend, http, retry, sleeps):
    backend.document_response = lambda request: httpx.Response(404)

    with pytest.raises(FetchError, match="404 Not Found"):
        asyncio.run(fetch_document(DOCUMENT_URL, client=http, retry=retry))
    assert len(backend.requests) == 5
    assert sleeps.calls == [2.0, 4.0, 8.0, 16.0]


def test_transport_error_is_fetch_error(backend, http, sleeps):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    backend.document_response = refuse
    with pytest.raises(FetchError, match="connection refused"):
        asyncio.run(fetch_document(DOCUMENT_URL, client=http, retry=RetryPolicy(max_attempts=2, sleep=sleeps)))


def test_hard_timeout_aborts_request(sleeps):
    async def stall(request):
        await asyncio.sleep(5)
        return httpx.Response(200, content=b"%PDF")

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(stall)) as client:
            return await fetch_document(
                DOCUMENT_URL,
                timeout=0.05,
                client=client,
                retry=RetryPolicy(max_attempts=1, sleep=sleeps),
            )

    with pytest.raises(FetchError, match="timed out"):
        asyncio.run(run())


def test_empty_document(backend, http, retry):
    backend.document = b""
    with pytest.raises(EmptyDocumentError):
        asyncio.run(fetch_document(DOCUMENT_URL, client=http, retry=retry))


def test_missing_pdf_signature_only_warns(backend, http, retry, caplog):
    backend.document = b"<html>not a pdf</html>"
    with caplog.at_level(logging.WARNING, logger="receipt_worker.fetcher"):
        content = asyncio.run(fetch_document(DOCUMENT_URL, client=http, retry=retry))
    assert content == backend.document
    assert "PDF header invalid" in caplog.text


def test_request_timeout_follows_fetch_timeout(backend, http, retry):
    asyncio.run(fetch_document(DOCUMENT_URL, timeout=30.0, client=http, retry=retry))

    (request,) = backend.sent(lambda r: r.url.host == "files.example.test")
    assert request.extensions["timeout"] == {"connect": 30.0, "read": 30.0, "write": 30.0, "pool": 30.0}
