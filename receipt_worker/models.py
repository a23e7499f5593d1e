"""Pydantic models for the receipt worker: extraction and storage contract."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

EXTRACT_EVENT = "receipts/extract-data-from-pdf-and-save"


class ReceiptItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str = "Item"
    quantity: int = 1
    unit_price: float = Field(default=0.0, alias="unitPrice")
    total_price: float = Field(default=0.0, alias="totalPrice")


class Merchant(BaseModel):
    name: str = "Unknown Merchant"
    address: str = ""
    contact: str = ""


class Transaction(BaseModel):
    date: str
    receipt_number: str
    payment_method: str = "Unknown"


class Totals(BaseModel):
    subtotal: float = 0.0
    tax: float = 0.0
    total: float = 0.0
    currency: str = "USD"


class ExtractedReceipt(BaseModel):
    merchant: Merchant
    transaction: Transaction
    items: list[ReceiptItem] = Field(default_factory=list)
    totals: Totals


class ExtractionEvent(BaseModel):
    """Payload of the trigger event: which file, which receipt record."""

    model_config = ConfigDict(populate_by_name=True)

    url: str
    receipt_id: str = Field(alias="receiptId")


class TriggerEvent(BaseModel):
    name: str
    data: dict[str, Any] = Field(default_factory=dict)


class SaveResult(BaseModel):
    success: bool = True
    user_id: str
    receipt_id: str
    merchant_name: str
    total_amount: float
    currency: str
    item_count: int


class FinancialBreakdown(BaseModel):
    subtotal: str
    tax: str
    total: str
    description: str


class ReceiptSummary(BaseModel):
    overview: str
    merchant_info: str
    transaction_details: str
    items_summary: str
    financial_breakdown: FinancialBreakdown
    quick_summary: str


class JobResult(BaseModel):
    status: str = "completed"
    extracted_data: ExtractedReceipt
    save_result: SaveResult
    ai_summary: ReceiptSummary


class JobStatus(str, Enum):
    PENDING = "pending"
    EXTRACTING = "extracting"
    EXTRACTED = "extracted"
    SAVING = "saving"
    COMPLETED = "completed"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunRecord(BaseModel):
    """One entry of the scheduler's run history."""

    run_id: str
    event_name: str
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    error: str | None = None
    result: JobResult | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class UploadResult(BaseModel):
    receipt_id: str = Field(serialization_alias="receiptId")
    file_name: str = Field(serialization_alias="fileName")
    queued: bool = False
