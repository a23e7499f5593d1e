"""Download receipt documents from signed storage URLs."""

from __future__ import annotations

import asyncio
import logging

import httpx
from opentelemetry import trace

from receipt_worker.backoff import RetryPolicy
from receipt_worker.errors import EmptyDocumentError, FetchError
from receipt_worker.telemetry import SERVICE_NAME

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(SERVICE_NAME)

PDF_SIGNATURE = b"%PDF"


async def _get_once(client: httpx.AsyncClient, url: str, timeout: float) -> bytes:
    try:
        resp = await asyncio.wait_for(client.get(url, timeout=timeout), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise FetchError(f"Document fetch timed out after {timeout:g}s") from exc
    except httpx.HTTPError as exc:
        raise FetchError(f"Document fetch failed: {exc}") from exc

    if not resp.is_success:
        raise FetchError(f"Document fetch failed: {resp.status_code} {resp.reason_phrase}")
    return resp.content


async def fetch_document(
    url: str,
    *,
    timeout: float = 30.0,
    client: httpx.AsyncClient | None = None,
    retry: RetryPolicy | None = None,
) -> bytes:
    """Download *url* and return its bytes.

    Each attempt is bounded by *timeout* seconds; attempts are repeated per
    *retry*. A missing PDF signature is only logged.
    """
    retry = retry or RetryPolicy()
    with tracer.start_as_current_span("worker.fetch_document", attributes={"document.url": url}) as span:
        owns_client = client is None
        http = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        try:
            logger.info("Fetching document from %s", url)
            content = await retry.run(lambda: _get_once(http, url, timeout))
        finally:
            if owns_client:
                await http.aclose()

        span.set_attribute("document.size_bytes", len(content))
        logger.info("Fetched document: %d bytes", len(content))

        if not content:
            raise EmptyDocumentError("Document is empty")

        if not content[:4].startswith(PDF_SIGNATURE):
            logger.warning("PDF header invalid. File may be corrupted or not a valid PDF.")

        return content
