"""
Shared pytest fixtures: a fake remote world behind httpx.MockTransport.
"""
from __future__ import annotations

import functools
import json
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
import pytest

from receipt_worker.backoff import RetryPolicy
from receipt_worker.dispatch import EventDispatcher
from receipt_worker.fetcher import fetch_document
from receipt_worker.gemini_client import GeminiExtractor
from receipt_worker.persistence import ConvexClient, ReceiptWriter, SchematicClient
from receipt_worker.pipeline import ReceiptPipeline
from receipt_worker.scheduler import JobScheduler

FIXED_NOW = datetime(2026, 10, 19, 12, 30, tzinfo=timezone.utc)

DOCUMENT_URL = "https://files.example.test/receipt.pdf"
GEMINI_BASE = "https://gemini.example.test"
CONVEX_URL = "https://convex.example.test"
SCHEMATIC_BASE = "https://schematic.example.test"
WORKER_URL = "https://worker.example.test"
UPLOAD_URL = "https://convex.example.test/upload/abc"


class SleepRecorder:
    """Stand-in for asyncio.sleep that records instead of waiting."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def gemini_body(text: str) -> dict[str, Any]:
    return {"candidates": [{"content": {"parts": [{"text": text}], "role": "model"}}]}


def convex_ok(value: Any) -> httpx.Response:
    return httpx.Response(200, json={"status": "success", "value": value})


class FakeBackend:
    """Routes every outbound request of the worker to canned responses.

    Attributes can be replaced per test, either with a static value or with a
    callable taking the request and returning an ``httpx.Response``.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.document: bytes = b"%PDF-1.4\n% fake receipt\n"
        self.document_response: Callable[[httpx.Request], httpx.Response] | None = None
        self.model_text = json.dumps(
            {
                "merchant": {"name": "Corner Grocer", "address": "1 Main St", "contact": "555-0100"},
                "transaction": {"date": "2026-10-01", "receipt_number": "A-17", "payment_method": "Cash"},
                "items": [{"name": "Apples", "quantity": 2, "unitPrice": 1.5, "totalPrice": 3.0}],
                "totals": {"subtotal": 3.0, "tax": 0.24, "total": 3.24, "currency": "usd"},
            }
        )
        self.probe_response: Callable[[httpx.Request], httpx.Response] | None = None
        self.generate_response: Callable[[httpx.Request], httpx.Response] | None = None
        self.mutations: dict[str, Any] = {
            "receipts:updateReceiptWithExtractedData": {"userId": "user_1"},
            "receipts:generateUploadUrl": UPLOAD_URL,
            "receipts:storeReceipt": "receipt_1",
        }
        self.queries: dict[str, Any] = {
            "receipts:getReceiptDownloadUrl": DOCUMENT_URL,
        }
        self.convex_response: Callable[[httpx.Request], httpx.Response | None] | None = None
        self.schematic_status = 200
        self.worker_status = 202
        self.worker_response: Callable[[httpx.Request], httpx.Response] | None = None

    def sent(self, predicate: Callable[[httpx.Request], bool]) -> list[httpx.Request]:
        return [r for r in self.requests if predicate(r)]

    def generate_calls(self) -> list[httpx.Request]:
        return self.sent(lambda r: r.url.path.endswith(":generateContent"))

    def convex_calls(self, path: str) -> list[dict[str, Any]]:
        bodies = [json.loads(r.content) for r in self.sent(lambda r: r.url.host == "convex.example.test")]
        return [b for b in bodies if isinstance(b, dict) and b.get("path") == path]

    def schematic_calls(self) -> list[httpx.Request]:
        return self.sent(lambda r: r.url.host == "schematic.example.test")

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = request.url

        if url.host == "files.example.test":
            if self.document_response is not None:
                return self.document_response(request)
            return httpx.Response(200, content=self.document)

        if url.host == "gemini.example.test":
            if request.method == "GET" and url.path == "/v1beta/models":
                if self.probe_response is not None:
                    return self.probe_response(request)
                return httpx.Response(200, json={"models": []})
            if self.generate_response is not None:
                return self.generate_response(request)
            return httpx.Response(200, json=gemini_body(self.model_text))

        if url.host == "convex.example.test":
            if url.path.startswith("/upload/"):
                return httpx.Response(200, json={"storageId": "storage_1"})
            if self.convex_response is not None:
                response = self.convex_response(request)
                if response is not None:
                    return response
            body = json.loads(request.content)
            table = self.mutations if url.path == "/api/mutation" else self.queries
            if body["path"] not in table:
                return httpx.Response(200, json={"status": "error", "errorMessage": f"no function {body['path']}"})
            return convex_ok(table[body["path"]])

        if url.host == "schematic.example.test":
            return httpx.Response(self.schematic_status, json={})

        if url.host == "worker.example.test":
            if self.worker_response is not None:
                return self.worker_response(request)
            return httpx.Response(self.worker_status, json={"queued": True, "run_id": "run_remote"})

        return httpx.Response(404)


@pytest.fixture()
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture()
def retry(sleeps) -> RetryPolicy:
    return RetryPolicy(max_attempts=5, base_delay=2.0, sleep=sleeps)


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def http(backend) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(backend))


@pytest.fixture()
def extractor(http, retry, sleeps) -> GeminiExtractor:
    return GeminiExtractor(
        api_key="test-key",
        model="models/gemini-2.5-flash",
        api_base=GEMINI_BASE,
        client=http,
        retry=retry,
        sleep=sleeps,
    )


@pytest.fixture()
def convex(http) -> ConvexClient:
    return ConvexClient(CONVEX_URL, client=http)


@pytest.fixture()
def writer(http, convex) -> ReceiptWriter:
    return ReceiptWriter(convex, SchematicClient("sch-key", SCHEMATIC_BASE, client=http))


@pytest.fixture()
def pipeline(http, extractor, writer, retry) -> ReceiptPipeline:
    return ReceiptPipeline(
        extractor=extractor,
        writer=writer,
        fetch=functools.partial(fetch_document, client=http),
        retry=retry,
    )


@pytest.fixture()
def scheduler(sleeps) -> JobScheduler:
    return JobScheduler(retries=3, retry_delay=1.0, sleep=sleeps)


@pytest.fixture()
def dispatcher(http) -> EventDispatcher:
    return EventDispatcher(WORKER_URL, "worker-key", client=http)
