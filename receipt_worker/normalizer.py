"""Receipt data normalizer.

Maps whatever the model returned onto the fixed receipt schema:
- Missing or empty fields get named defaults
- Numbers are coerced from numeric-looking text ("$1,204.50")
- Currency is upper-cased, defaulting to USD

Only a non-object root is rejected.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace

from receipt_worker.errors import InvalidShapeError
from receipt_worker.models import ExtractedReceipt, Merchant, ReceiptItem, Totals, Transaction
from receipt_worker.telemetry import SERVICE_NAME

tracer = trace.get_tracer(SERVICE_NAME)


def _section(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _text(value: Any, default: str) -> str:
    return str(value or default).strip()


def _number(value: Any) -> float | None:
    """Return *value* as a finite float, or None when it is not numeric."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        value = value.strip().replace(",", "").replace("$", "")
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def _amount(value: Any, default: float = 0.0) -> float:
    return _number(value) or default


def _non_negative(value: Any, default: float) -> float:
    number = _number(value)
    if not number or number < 0:
        return default
    return number


def _item(raw: Any) -> ReceiptItem:
    item = _section(raw)
    return ReceiptItem(
        name=_text(item.get("name"), "Item"),
        quantity=int(_non_negative(item.get("quantity"), 1)) or 1,
        unit_price=_non_negative(item.get("unitPrice"), 0.0),
        total_price=_non_negative(item.get("totalPrice"), 0.0),
    )


def normalize(parsed: Any, *, now: datetime | None = None) -> ExtractedReceipt:
    """Coerce a parsed model response into an :class:`ExtractedReceipt`.

    *now* fixes the clock used for the default date and receipt number.
    """
    with tracer.start_as_current_span("worker.normalize"):
        if not isinstance(parsed, Mapping):
            raise InvalidShapeError(f"Invalid receipt data structure: expected an object, got {type(parsed).__name__}")

        now = now or datetime.now(timezone.utc)
        merchant = _section(parsed.get("merchant"))
        transaction = _section(parsed.get("transaction"))
        totals = _section(parsed.get("totals"))
        raw_items = parsed.get("items")

        return ExtractedReceipt(
            merchant=Merchant(
                name=_text(merchant.get("name"), "Unknown Merchant"),
                address=_text(merchant.get("address"), ""),
                contact=_text(merchant.get("contact"), ""),
            ),
            transaction=Transaction(
                date=_text(transaction.get("date"), now.date().isoformat()),
                receipt_number=_text(transaction.get("receipt_number"), f"REC{int(now.timestamp() * 1000)}"),
                payment_method=_text(transaction.get("payment_method"), "Unknown"),
            ),
            items=[_item(raw) for raw in raw_items] if isinstance(raw_items, list) else [],
            totals=Totals(
                subtotal=_amount(totals.get("subtotal")),
                tax=_amount(totals.get("tax")),
                total=_amount(totals.get("total")),
                currency=_text(totals.get("currency"), "USD").upper(),
            ),
        )
