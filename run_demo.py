#!/usr/bin/env python3
"""
run_demo.py: run one receipt extraction job from the command line.

Usage:
  python run_demo.py --pdf-url <url> --receipt-id <id>   # Extract and save
  python run_demo.py --pdf-url <url> --dry-run           # Extract only, print JSON

The job runs in-process with the same collaborators the web service uses,
configured from the environment (.env is loaded).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from receipt_worker.config import config
from receipt_worker.main import build_services
from receipt_worker.models import EXTRACT_EVENT, ExtractionEvent, JobStatus, RunRecord
from receipt_worker.telemetry import init_telemetry

SEP = "--------------------------------------------------"


# ============================================================
# Formatted output
# ============================================================


def print_run(record: RunRecord) -> None:
    print()
    print(SEP)
    print("\U0001f9fe RECEIPT EXTRACTION")
    print(SEP)
    print(f"Run ID: {record.run_id}")
    print(f"Status: {record.status.value} after {record.attempts} attempt(s)")
    print()

    if record.status != JobStatus.COMPLETED or record.result is None:
        print(f"Error: {record.error}")
        print(SEP)
        return

    summary = record.result.ai_summary
    print(SEP)
    print("\U0001f4ca SUMMARY")
    print(SEP)
    print(summary.overview)
    print(summary.merchant_info)
    print(summary.transaction_details)
    print(summary.items_summary)
    print(summary.financial_breakdown.description)
    print()
    print(summary.quick_summary)
    print(SEP)


# ============================================================
# Main
# ============================================================


async def run_job(pdf_url: str, receipt_id: str) -> RunRecord:
    services = build_services(config)
    event = ExtractionEvent(url=pdf_url, receipt_id=receipt_id)
    try:
        return await services.scheduler.execute(EXTRACT_EVENT, event, services.pipeline.run)
    finally:
        await services.http_client.aclose()


async def run_dry(pdf_url: str) -> None:
    services = build_services(config)
    pipeline = services.pipeline
    try:
        document = await pipeline.fetch(pdf_url, timeout=pipeline.fetch_timeout, retry=pipeline.retry)
        receipt = await pipeline.extractor.extract_receipt(document)
    finally:
        await services.http_client.aclose()
    print(receipt.model_dump_json(indent=2, by_alias=True))


def main() -> None:
    parser = argparse.ArgumentParser(description="Extract structured data from a PDF receipt")
    parser.add_argument("--pdf-url", required=True, help="URL of the receipt PDF")
    parser.add_argument("--receipt-id", default="", help="Receipt row to update (required unless --dry-run)")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Skip persistence and print the normalized receipt",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING)
    init_telemetry()

    try:
        if args.dry_run:
            asyncio.run(run_dry(args.pdf_url))
            return
        if not args.receipt_id:
            parser.error("--receipt-id is required unless --dry-run is given")
        record = asyncio.run(run_job(args.pdf_url, args.receipt_id))
        print_run(record)
        if record.status != JobStatus.COMPLETED:
            sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.")
    except Exception as exc:
        print(f"\nERROR: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
