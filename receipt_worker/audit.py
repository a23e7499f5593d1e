"""Structured audit logging for the receipt worker.

Rules:
- Never log document bytes or model output
- Log metadata only
- One JSON object per line
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from receipt_worker.telemetry import SERVICE_NAME

logger = logging.getLogger("worker.audit")


def _emit(event: str, **kwargs) -> None:
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": SERVICE_NAME,
        "event": event,
        **kwargs,
    }
    logger.info(json.dumps(entry, default=str))


def log_event_received(run_id: str, event_name: str, receipt_id: str, url: str) -> None:
    _emit("event_received", run_id=run_id, event_name=event_name, receipt_id=receipt_id, url=url)


def log_step_completed(run_id: str, step_id: str, duration_ms: float) -> None:
    _emit("step_completed", run_id=run_id, step_id=step_id, duration_ms=round(duration_ms, 2))


def log_job_retry(run_id: str, attempt: int, error: str) -> None:
    _emit("job_retry", run_id=run_id, attempt=attempt, error=error)


def log_job_completed(run_id: str, receipt_id: str, item_count: int, attempts: int) -> None:
    _emit(
        "job_completed",
        run_id=run_id,
        receipt_id=receipt_id,
        item_count=item_count,
        attempts=attempts,
    )


def log_job_failed(run_id: str, error_type: str, error: str, attempts: int) -> None:
    _emit("job_failed", run_id=run_id, error_type=error_type, error=error, attempts=attempts)


def log_usage_tracked(event: str, company_id: str) -> None:
    _emit("usage_tracked", usage_event=event, company_id=company_id)


def log_upload_stored(user_id: str, receipt_id: str, file_name: str, size: int) -> None:
    _emit("upload_stored", user_id=user_id, receipt_id=receipt_id, file_name=file_name, size=size)
