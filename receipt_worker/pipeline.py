"""Extract-and-save job for uploaded receipts.

Two checkpointed steps:

1. ``extract-pdf-data``  fetch the PDF, ask Gemini for JSON, normalize it
2. ``save-to-database``  write the fields to Convex, report one scan

A failed save is retried without repeating the extraction.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from receipt_worker.audit import log_event_received, log_job_completed
from receipt_worker.backoff import RetryPolicy
from receipt_worker.fetcher import fetch_document
from receipt_worker.gemini_client import GeminiExtractor
from receipt_worker.models import (
    EXTRACT_EVENT,
    ExtractedReceipt,
    ExtractionEvent,
    FinancialBreakdown,
    JobResult,
    JobStatus,
    ReceiptSummary,
    SaveResult,
)
from receipt_worker.persistence import ReceiptWriter
from receipt_worker.scheduler import StepContext

logger = logging.getLogger(__name__)

EXTRACT_STEP = "extract-pdf-data"
SAVE_STEP = "save-to-database"

Fetch = Callable[..., Awaitable[bytes]]


def build_summary(extracted: ExtractedReceipt) -> ReceiptSummary:
    """Human-readable digest of a normalized receipt. Never persisted."""
    merchant, transaction, totals = extracted.merchant, extracted.transaction, extracted.totals
    cur = totals.currency

    merchant_info = merchant.name
    if merchant.address:
        merchant_info += f" located at {merchant.address}"
    if merchant.contact:
        merchant_info += f" (Contact: {merchant.contact})"

    if extracted.items:
        listed = ", ".join(
            f"{item.name} (Qty: {item.quantity}, Price: {cur} {item.total_price})" for item in extracted.items
        )
        items_summary = f"Purchased {len(extracted.items)} item(s): {listed}"
    else:
        items_summary = "No items listed"

    subtotal, tax, total = f"{cur} {totals.subtotal:.2f}", f"{cur} {totals.tax:.2f}", f"{cur} {totals.total:.2f}"

    return ReceiptSummary(
        overview=f"Receipt from {merchant.name} dated {transaction.date}",
        merchant_info=merchant_info,
        transaction_details=(
            f"Transaction #{transaction.receipt_number} paid via {transaction.payment_method}"
        ),
        items_summary=items_summary,
        financial_breakdown=FinancialBreakdown(
            subtotal=subtotal,
            tax=tax,
            total=total,
            description=f"Subtotal: {subtotal}, Tax: {tax}, Grand Total: {total}",
        ),
        quick_summary=(
            f"{merchant.name} - {len(extracted.items)} item(s) totaling {total} on {transaction.date}"
        ),
    )


class ReceiptPipeline:
    """Job handler for the extract-and-save event.

    Collaborators are built by the hosting process and handed in; the
    pipeline keeps no state between runs.
    """

    def __init__(
        self,
        extractor: GeminiExtractor,
        writer: ReceiptWriter,
        fetch: Fetch = fetch_document,
        fetch_timeout: float = 30.0,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.extractor = extractor
        self.writer = writer
        self.fetch = fetch
        self.fetch_timeout = fetch_timeout
        self.retry = retry or RetryPolicy()

    async def _extract(self, event: ExtractionEvent) -> ExtractedReceipt:
        document = await self.fetch(event.url, timeout=self.fetch_timeout, retry=self.retry)
        return await self.extractor.extract_receipt(document)

    async def run(self, event: ExtractionEvent, steps: StepContext) -> JobResult:
        log_event_received(steps.run_id, EXTRACT_EVENT, event.receipt_id, event.url)

        steps.transition(JobStatus.EXTRACTING)
        extracted = await steps.run(EXTRACT_STEP, lambda: self._extract(event))
        steps.transition(JobStatus.EXTRACTED)

        steps.transition(JobStatus.SAVING)
        saved: SaveResult = await steps.run(SAVE_STEP, lambda: self.writer.save(event.receipt_id, extracted))
        steps.transition(JobStatus.COMPLETED)

        summary = build_summary(extracted)
        logger.info("Receipt %s processed: %s", event.receipt_id, summary.quick_summary)
        log_job_completed(steps.run_id, event.receipt_id, len(extracted.items), steps.record.attempts)

        return JobResult(extracted_data=extracted, save_result=saved, ai_summary=summary)
