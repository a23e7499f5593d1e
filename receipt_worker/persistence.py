"""Convex storage and Schematic usage tracking.

``ReceiptWriter.save`` is the only place a job writes durable state. The
usage report that follows it is best-effort: once the receipt row is
updated, a failed report is logged and dropped.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from opentelemetry import trace

from receipt_worker.audit import log_usage_tracked
from receipt_worker.errors import PersistenceError
from receipt_worker.models import ExtractedReceipt, SaveResult
from receipt_worker.telemetry import SERVICE_NAME

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(SERVICE_NAME)

UPDATE_RECEIPT = "receipts:updateReceiptWithExtractedData"
SCAN_EVENT = "scan"


def _format_amount(value: float) -> str:
    """Plain rendering without trailing zeros: 12.5 -> "12.5", 108.0 -> "108"."""
    return f"{value:.2f}".rstrip("0").rstrip(".")


def receipt_summary_sentence(extracted: ExtractedReceipt) -> str:
    return (
        f"Receipt from {extracted.merchant.name} on {extracted.transaction.date} "
        f"for {extracted.totals.currency} {_format_amount(extracted.totals.total)}. "
        f"{len(extracted.items)} item(s) purchased."
    )


class ConvexClient:
    """Minimal client for the Convex HTTP function API."""

    def __init__(self, url: str, deploy_key: str = "", client: httpx.AsyncClient | None = None) -> None:
        self.url = url.rstrip("/")
        self.deploy_key = deploy_key
        self.client = client

    async def _call(self, kind: str, path: str, args: dict[str, Any]) -> Any:
        if not self.url:
            raise PersistenceError("CONVEX_URL is not configured")

        headers = {"Content-Type": "application/json"}
        if self.deploy_key:
            headers["Authorization"] = f"Convex {self.deploy_key}"

        owns_client = self.client is None
        http = self.client or httpx.AsyncClient(timeout=30.0)
        try:
            resp = await http.post(
                f"{self.url}/api/{kind}",
                json={"path": path, "args": args, "format": "json"},
                headers=headers,
                timeout=30.0,
            )
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise PersistenceError(f"Convex {kind} {path} failed: {exc}") from exc
        finally:
            if owns_client:
                await http.aclose()

        if body.get("status") != "success":
            raise PersistenceError(f"Convex {kind} {path} failed: {body.get('errorMessage', 'unknown error')}")
        return body.get("value")

    async def mutation(self, path: str, args: dict[str, Any]) -> Any:
        return await self._call("mutation", path, args)

    async def query(self, path: str, args: dict[str, Any]) -> Any:
        return await self._call("query", path, args)


class SchematicClient:
    """Reports feature usage to Schematic."""

    def __init__(
        self,
        api_key: str,
        api_base: str = "https://api.schematichq.com",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.client = client

    async def track(self, event: str, company_id: str, user_id: str) -> None:
        if not self.api_key:
            logger.info("SCHEMATIC_API_KEY not set, skipping usage event %s", event)
            return

        payload = {
            "event_type": "track",
            "body": {
                "event": event,
                "company": {"id": company_id},
                "user": {"id": user_id},
            },
        }
        owns_client = self.client is None
        http = self.client or httpx.AsyncClient(timeout=10.0)
        try:
            resp = await http.post(
                f"{self.api_base}/events",
                json=payload,
                headers={"X-Schematic-Api-Key": self.api_key},
                timeout=10.0,
            )
            resp.raise_for_status()
        finally:
            if owns_client:
                await http.aclose()
        log_usage_tracked(event, company_id)


class ReceiptWriter:
    def __init__(self, convex: ConvexClient, usage: SchematicClient) -> None:
        self.convex = convex
        self.usage = usage

    async def save(self, receipt_id: str, extracted: ExtractedReceipt) -> SaveResult:
        """Store *extracted* on the receipt row, then report one scan."""
        with tracer.start_as_current_span("worker.save", attributes={"receipt.id": receipt_id}):
            logger.info("Saving extracted data for receipt %s", receipt_id)
            value = await self.convex.mutation(
                UPDATE_RECEIPT,
                {
                    "id": receipt_id,
                    "fileDisplayName": extracted.merchant.name or "Receipt",
                    "merchantName": extracted.merchant.name,
                    "merchantAddress": extracted.merchant.address,
                    "merchantContact": extracted.merchant.contact,
                    "transactionDate": extracted.transaction.date,
                    "transactionAmount": extracted.totals.total,
                    "receiptSummary": receipt_summary_sentence(extracted),
                    "currency": extracted.totals.currency,
                    "items": [item.model_dump(by_alias=True) for item in extracted.items],
                },
            )
            user_id = value.get("userId") if isinstance(value, dict) else None
            if not user_id:
                raise PersistenceError(f"{UPDATE_RECEIPT} returned no userId")
            logger.info("Data saved to database for user %s", user_id)

            try:
                await self.usage.track(SCAN_EVENT, company_id=user_id, user_id=user_id)
            except httpx.HTTPError:
                logger.warning("Usage tracking failed for user %s", user_id, exc_info=True)

            return SaveResult(
                user_id=user_id,
                receipt_id=receipt_id,
                merchant_name=extracted.merchant.name,
                total_amount=extracted.totals.total,
                currency=extracted.totals.currency,
                item_count=len(extracted.items),
            )
