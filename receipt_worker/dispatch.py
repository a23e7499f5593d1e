"""Client for sending trigger events to the worker's ``/events`` endpoint."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from opentelemetry import trace
from opentelemetry.propagate import inject

from receipt_worker.telemetry import SERVICE_NAME

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(SERVICE_NAME)


class EventDispatcher:
    def __init__(self, worker_url: str, api_key: str = "", client: httpx.AsyncClient | None = None) -> None:
        self.worker_url = worker_url.rstrip("/")
        self.api_key = api_key
        self.client = client

    async def send(self, name: str, data: dict[str, Any]) -> dict[str, Any]:
        """POST one event and return the worker's acknowledgement."""
        with tracer.start_as_current_span("worker.dispatch_event", attributes={"event.name": name}):
            headers: dict[str, str] = {
                "X-API-Key": self.api_key,
                "Content-Type": "application/json",
            }
            # Inject W3C traceparent
            inject(carrier=headers)

            owns_client = self.client is None
            http = self.client or httpx.AsyncClient(timeout=10.0)
            try:
                resp = await http.post(
                    f"{self.worker_url}/events",
                    json={"name": name, "data": data},
                    headers=headers,
                    timeout=10.0,
                )
                resp.raise_for_status()
                return resp.json()
            finally:
                if owns_client:
                    await http.aclose()

    async def try_send(self, name: str, data: dict[str, Any]) -> bool:
        """Like :meth:`send`, but a delivery failure is only logged."""
        try:
            ack = await self.send(name, data)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Event %s could not be dispatched, continuing without extraction: %s", name, exc)
            return False
        run_id = ack.get("run_id") if isinstance(ack, dict) else None
        logger.info("Event %s queued as run %s", name, run_id)
        return True
