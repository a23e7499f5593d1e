"""In-process job scheduler with per-step checkpoints.

A job handler receives a :class:`StepContext`. Each ``steps.run(step_id, fn)``
call succeeds at most once per run: its result is cached, and a job-level
retry replays the handler against the same cache, so finished steps are
skipped. Run history is kept in memory and lost on restart.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from opentelemetry import trace

from receipt_worker.audit import log_job_failed, log_job_retry, log_step_completed
from receipt_worker.backoff import Sleep
from receipt_worker.models import JobStatus, RunRecord
from receipt_worker.telemetry import SERVICE_NAME

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(SERVICE_NAME)

T = TypeVar("T")

ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.EXTRACTING},
    JobStatus.EXTRACTING: {JobStatus.EXTRACTED, JobStatus.FAILED},
    JobStatus.EXTRACTED: {JobStatus.SAVING},
    JobStatus.SAVING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class InvalidTransition(RuntimeError):
    pass


class StepContext:
    """Checkpoint cache and status holder for one run."""

    def __init__(self, record: RunRecord) -> None:
        self.record = record
        self._completed: dict[str, Any] = {}

    @property
    def run_id(self) -> str:
        return self.record.run_id

    def transition(self, status: JobStatus) -> None:
        current = self.record.status
        if status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransition(f"{current.value} -> {status.value}")
        self.record.status = status
        self.record.updated_at = datetime.now(timezone.utc)

    def reset(self) -> None:
        """Start a new attempt; cached step results are kept."""
        self.record.status = JobStatus.PENDING
        self.record.updated_at = datetime.now(timezone.utc)

    def is_completed(self, step_id: str) -> bool:
        return step_id in self._completed

    async def run(self, step_id: str, fn: Callable[[], Awaitable[T]]) -> T:
        if step_id in self._completed:
            logger.info("Step %s already completed for run %s, using cached result", step_id, self.run_id)
            return self._completed[step_id]

        with tracer.start_as_current_span("worker.step", attributes={"step.id": step_id, "run.id": self.run_id}):
            t0 = time.perf_counter()
            result = await fn()
            self._completed[step_id] = result
            log_step_completed(self.run_id, step_id, (time.perf_counter() - t0) * 1000.0)
            return result


JobHandler = Callable[[Any, StepContext], Awaitable[Any]]


class JobScheduler:
    """Runs job handlers with job-level retries and keeps their history."""

    def __init__(self, retries: int = 3, retry_delay: float = 1.0, sleep: Sleep = asyncio.sleep) -> None:
        self.retries = retries
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.runs: dict[str, RunRecord] = {}

    def create_run(self, event_name: str) -> RunRecord:
        record = RunRecord(run_id=uuid.uuid4().hex, event_name=event_name)
        self.runs[record.run_id] = record
        return record

    def get_run(self, run_id: str) -> RunRecord | None:
        return self.runs.get(run_id)

    async def execute(
        self,
        event_name: str,
        payload: Any,
        handler: JobHandler,
        record: RunRecord | None = None,
    ) -> RunRecord:
        """Run *handler* to completion or until the retry budget is spent.

        Failures are recorded on the returned run rather than raised.
        """
        record = record or self.create_run(event_name)
        steps = StepContext(record)

        for attempt in range(self.retries + 1):
            record.attempts = attempt + 1
            if attempt:
                steps.reset()
            try:
                record.result = await handler(payload, steps)
                record.error = None
                return record
            except Exception as exc:
                record.error = f"{type(exc).__name__}: {exc}"
                retriable = getattr(exc, "retriable", True)
                if not retriable or attempt == self.retries:
                    logger.error("Run %s failed after %d attempt(s): %s", record.run_id, record.attempts, exc)
                    record.status = JobStatus.FAILED
                    record.updated_at = datetime.now(timezone.utc)
                    log_job_failed(record.run_id, type(exc).__name__, str(exc), record.attempts)
                    return record
                log_job_retry(record.run_id, record.attempts, record.error)
                logger.warning("Run %s attempt %d failed, retrying: %s", record.run_id, record.attempts, exc)
                await self.sleep(self.retry_delay)

        return record
