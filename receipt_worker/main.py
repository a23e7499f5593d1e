"""Receipt Worker: FastAPI application.

POST /events           Inbound trigger, queues an extract-and-save run.
GET  /runs/{run_id}    Run history entry for operators.
POST /receipts/upload  Store a PDF receipt and trigger its extraction.
GET  /health           Liveness check.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass

import httpx
from fastapi import BackgroundTasks, Depends, FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from opentelemetry.propagate import extract
from pydantic import ValidationError

from receipt_worker.backoff import RetryPolicy
from receipt_worker.config import WorkerConfig, config
from receipt_worker.dispatch import EventDispatcher
from receipt_worker.errors import ReceiptWorkerError, UploadRejected
from receipt_worker.fetcher import fetch_document
from receipt_worker.gemini_client import GeminiExtractor
from receipt_worker.models import EXTRACT_EVENT, ExtractionEvent, RunRecord, TriggerEvent
from receipt_worker.persistence import ConvexClient, ReceiptWriter, SchematicClient
from receipt_worker.pipeline import ReceiptPipeline
from receipt_worker.scheduler import JobScheduler
from receipt_worker.telemetry import get_tracer, init_telemetry
from receipt_worker.uploads import upload_receipt

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=getattr(logging, config.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
)
logger = logging.getLogger("receipt_worker")

# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@dataclass
class Services:
    """Everything a request handler needs, built once per process."""

    convex: ConvexClient
    pipeline: ReceiptPipeline
    scheduler: JobScheduler
    dispatcher: EventDispatcher
    http_client: httpx.AsyncClient


def build_services(cfg: WorkerConfig) -> Services:
    """Wire the collaborators around one shared HTTP client.

    Every request made through it passes its own timeout.
    """
    http = httpx.AsyncClient(follow_redirects=True)
    retry = RetryPolicy(max_attempts=cfg.retry_max_attempts, base_delay=cfg.retry_base_delay)
    convex = ConvexClient(cfg.convex_url, cfg.convex_deploy_key, client=http)
    pipeline = ReceiptPipeline(
        extractor=GeminiExtractor(
            api_key=cfg.gemini_api_key,
            model=cfg.gemini_model,
            api_base=cfg.gemini_api_base,
            client=http,
            retry=retry,
        ),
        writer=ReceiptWriter(convex, SchematicClient(cfg.schematic_api_key, cfg.schematic_api_base, client=http)),
        fetch=functools.partial(fetch_document, client=http),
        fetch_timeout=cfg.fetch_timeout,
        retry=retry,
    )
    return Services(
        convex=convex,
        pipeline=pipeline,
        scheduler=JobScheduler(retries=cfg.job_retries, retry_delay=cfg.job_retry_delay),
        dispatcher=EventDispatcher(cfg.worker_url, cfg.api_key, client=http),
        http_client=http,
    )


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Receipt Extraction Worker",
    version="0.1.0",
    description="Extracts structured data from uploaded PDF receipts with Google Gemini",
)


@app.on_event("startup")
async def _startup() -> None:
    init_telemetry()
    app.state.services = build_services(config)
    logger.info(
        "Receipt worker started: gemini_configured=%s, otel=%s",
        config.gemini_configured,
        bool(config.otel_endpoint),
    )


@app.on_event("shutdown")
async def _shutdown() -> None:
    await app.state.services.http_client.aclose()


def get_services(request: Request) -> Services:
    return request.app.state.services


# ---------------------------------------------------------------------------
# Auth dependency
# ---------------------------------------------------------------------------


def _verify_api_key(x_api_key: str = Header(default="")) -> None:
    if config.api_key and x_api_key != config.api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health")
async def health():
    return {"status": "ok", "gemini_configured": config.gemini_configured}


@app.post("/events", status_code=202, dependencies=[Depends(_verify_api_key)])
async def receive_event(
    body: TriggerEvent,
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    """Validate the trigger and queue one run of the pipeline."""
    if body.name != EXTRACT_EVENT:
        raise HTTPException(status_code=400, detail=f"Unknown event: {body.name}")
    try:
        event = ExtractionEvent.model_validate(body.data)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors()) from exc

    ctx = extract(carrier=dict(request.headers))
    with get_tracer().start_as_current_span(
        "worker.handle_event",
        context=ctx,
        attributes={"receipt.id": event.receipt_id, "document.url": event.url},
    ):
        record = services.scheduler.create_run(body.name)
        background_tasks.add_task(services.scheduler.execute, body.name, event, services.pipeline.run, record)

    return {"queued": True, "run_id": record.run_id}


@app.get("/runs/{run_id}", response_model=RunRecord, dependencies=[Depends(_verify_api_key)])
async def get_run(run_id: str, services: Services = Depends(get_services)):
    record = services.scheduler.get_run(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return record


@app.post("/receipts/upload", dependencies=[Depends(_verify_api_key)])
async def upload_receipt_endpoint(
    file: UploadFile = File(...),
    x_user_id: str = Header(default=""),
    services: Services = Depends(get_services),
):
    if not x_user_id:
        raise HTTPException(status_code=401, detail="User not authenticated")

    content = await file.read()
    try:
        result = await upload_receipt(
            user_id=x_user_id,
            file_name=file.filename or "receipt.pdf",
            content=content,
            content_type=file.content_type or "",
            convex=services.convex,
            dispatcher=services.dispatcher,
            client=services.http_client,
        )
    except UploadRejected as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return {"success": True, "data": result.model_dump(by_alias=True)}


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------


@app.exception_handler(ReceiptWorkerError)
async def _worker_error_handler(request: Request, exc: ReceiptWorkerError):
    logger.error("%s: %s", type(exc).__name__, exc)
    return JSONResponse(
        status_code=502,
        content={"success": False, "error": str(exc)},
    )


@app.exception_handler(Exception)
async def _global_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error": str(exc)},
    )
