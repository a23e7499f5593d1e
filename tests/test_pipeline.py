"""
End-to-end tests for the extract-and-save job against faked remote services.
"""
import asyncio

import httpx

from conftest import DOCUMENT_URL
from receipt_worker.models import EXTRACT_EVENT, ExtractionEvent, JobStatus
from receipt_worker.persistence import UPDATE_RECEIPT
from receipt_worker.pipeline import EXTRACT_STEP, SAVE_STEP, build_summary
from receipt_worker.normalizer import normalize

FENCED_ACME = '```json\n{"merchant":{"name":"Acme"},"totals":{"total":12.5,"currency":"usd"}}\n```'


def _run(scheduler, pipeline, url=DOCUMENT_URL, receipt_id="r1"):
    event = ExtractionEvent(url=url, receiptId=receipt_id)
    return asyncio.run(scheduler.execute(EXTRACT_EVENT, event, pipeline.run))


def test_fenced_model_output_is_saved(backend, scheduler, pipeline):
    backend.model_text = FENCED_ACME

    record = _run(scheduler, pipeline)

    assert record.status is JobStatus.COMPLETED
    (call,) = backend.convex_calls(UPDATE_RECEIPT)
    args = call["args"]
    assert args["id"] == "r1"
    assert args["merchantName"] == "Acme"
    assert args["transactionAmount"] == 12.5
    assert args["currency"] == "USD"
    assert "Acme" in args["receiptSummary"]
    assert "12.5" in args["receiptSummary"]

    result = record.result
    assert result.status == "completed"
    assert result.save_result.user_id == "user_1"
    assert "Acme" in result.ai_summary.quick_summary
    assert "12.5" in result.ai_summary.quick_summary


def test_full_receipt(backend, scheduler, pipeline):
    record = _run(scheduler, pipeline, receipt_id="r2")

    assert record.status is JobStatus.COMPLETED
    assert record.attempts == 1
    extracted = record.result.extracted_data
    assert extracted.merchant.name == "Corner Grocer"
    assert extracted.totals.currency == "USD"
    assert [i.name for i in extracted.items] == ["Apples"]
    assert len(backend.schematic_calls()) == 1


def test_empty_document_fails_before_ai_call(backend, scheduler, pipeline):
    backend.document = b""

    record = _run(scheduler, pipeline)

    assert record.status is JobStatus.FAILED
    assert record.error.startswith("EmptyDocumentError")
    assert backend.sent(lambda r: r.url.host == "gemini.example.test") == []
    assert backend.convex_calls(UPDATE_RECEIPT) == []


def test_save_retry_does_not_repeat_extraction(backend, scheduler, pipeline):
    failures = iter([httpx.Response(502)])
    backend.convex_response = lambda request: next(failures, None)

    record = _run(scheduler, pipeline)

    assert record.status is JobStatus.COMPLETED
    assert record.attempts == 2
    assert len(backend.generate_calls()) == 1
    assert len(backend.sent(lambda r: r.url.host == "files.example.test")) == 1
    assert len(backend.convex_calls(UPDATE_RECEIPT)) == 2


def test_missing_credential_fails_without_retry(backend, scheduler, pipeline, sleeps):
    pipeline.extractor.api_key = ""

    record = _run(scheduler, pipeline)

    assert record.status is JobStatus.FAILED
    assert record.attempts == 1
    assert record.error.startswith("ConfigurationError")
    assert backend.generate_calls() == []


def test_non_object_output_fails_in_extracting(backend, scheduler, pipeline):
    backend.model_text = "[1, 2, 3]"

    record = _run(scheduler, pipeline)

    assert record.status is JobStatus.FAILED
    assert record.error.startswith("InvalidShapeError")
    assert len(backend.generate_calls()) == 4
    assert backend.convex_calls(UPDATE_RECEIPT) == []


def test_steps_are_named(backend, scheduler, pipeline):
    event = ExtractionEvent(url=DOCUMENT_URL, receipt_id="r3")
    seen = []

    class Recorder:
        def __init__(self, inner):
            self.inner = inner
            self.run_id = inner.run_id
            self.record = inner.record

        def transition(self, status):
            self.inner.transition(status)

        async def run(self, step_id, fn):
            seen.append(step_id)
            return await self.inner.run(step_id, fn)

    async def handler(payload, steps):
        return await pipeline.run(payload, Recorder(steps))

    record = asyncio.run(scheduler.execute(EXTRACT_EVENT, event, handler))
    assert record.status is JobStatus.COMPLETED
    assert seen == [EXTRACT_STEP, SAVE_STEP]


class TestSummary:
    def test_with_items(self):
        receipt = normalize(
            {
                "merchant": {"name": "Acme", "address": "9 Elm Rd", "contact": "555"},
                "transaction": {"date": "2026-10-02", "receipt_number": "R-1", "payment_method": "Visa"},
                "items": [{"name": "Widget", "quantity": 2, "totalPrice": 10}],
                "totals": {"subtotal": 10, "tax": 0.8, "total": 10.8, "currency": "usd"},
            }
        )
        summary = build_summary(receipt)
        assert summary.overview == "Receipt from Acme dated 2026-10-02"
        assert summary.merchant_info == "Acme located at 9 Elm Rd (Contact: 555)"
        assert summary.transaction_details == "Transaction #R-1 paid via Visa"
        assert summary.items_summary == "Purchased 1 item(s): Widget (Qty: 2, Price: USD 10.0)"
        assert summary.financial_breakdown.tax == "USD 0.80"
        assert summary.financial_breakdown.description == (
            "Subtotal: USD 10.00, Tax: USD 0.80, Grand Total: USD 10.80"
        )
        assert summary.quick_summary == "Acme - 1 item(s) totaling USD 10.80 on 2026-10-02"

    def test_without_items(self):
        summary = build_summary(normalize({"merchant": {"name": "Acme"}}))
        assert summary.items_summary == "No items listed"
        assert summary.merchant_info == "Acme"
