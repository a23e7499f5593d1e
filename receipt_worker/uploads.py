"""Receipt upload flow: store the PDF, create the row, trigger extraction."""

from __future__ import annotations

import logging

import httpx

from receipt_worker.audit import log_upload_stored
from receipt_worker.dispatch import EventDispatcher
from receipt_worker.errors import PersistenceError, UploadRejected
from receipt_worker.models import EXTRACT_EVENT, UploadResult
from receipt_worker.persistence import ConvexClient

logger = logging.getLogger(__name__)

GENERATE_UPLOAD_URL = "receipts:generateUploadUrl"
STORE_RECEIPT = "receipts:storeReceipt"
GET_DOWNLOAD_URL = "receipts:getReceiptDownloadUrl"


def is_pdf(file_name: str, content_type: str) -> bool:
    return "pdf" in (content_type or "") or file_name.lower().endswith(".pdf")


async def _put_file(upload_url: str, content: bytes, content_type: str, client: httpx.AsyncClient | None) -> str:
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=60.0)
    try:
        resp = await http.post(upload_url, content=content, headers={"Content-Type": content_type}, timeout=60.0)
        resp.raise_for_status()
        storage_id = resp.json().get("storageId")
    except (httpx.HTTPError, ValueError) as exc:
        raise PersistenceError(f"Failed to upload file: {exc}") from exc
    finally:
        if owns_client:
            await http.aclose()
    if not storage_id:
        raise PersistenceError("Upload response did not include a storageId")
    return storage_id


async def upload_receipt(
    *,
    user_id: str,
    file_name: str,
    content: bytes,
    content_type: str,
    convex: ConvexClient,
    dispatcher: EventDispatcher,
    client: httpx.AsyncClient | None = None,
) -> UploadResult:
    """Store one PDF for *user_id* and queue its extraction.

    The upload counts as successful once the receipt row exists, even if
    the extraction event cannot be delivered.
    """
    if not is_pdf(file_name, content_type):
        raise UploadRejected("Only PDF files are allowed")
    if not content:
        raise UploadRejected("No file provided")

    content_type = content_type or "application/pdf"
    upload_url = await convex.mutation(GENERATE_UPLOAD_URL, {})
    storage_id = await _put_file(upload_url, content, content_type, client)

    receipt_id = await convex.mutation(
        STORE_RECEIPT,
        {
            "userId": user_id,
            "fileId": storage_id,
            "fileName": file_name,
            "size": len(content),
            "mimeType": content_type,
        },
    )
    log_upload_stored(user_id, receipt_id, file_name, len(content))

    download_url = await convex.query(GET_DOWNLOAD_URL, {"fileId": storage_id})
    if not download_url:
        raise PersistenceError("Download URL not found")

    queued = await dispatcher.try_send(EXTRACT_EVENT, {"url": download_url, "receiptId": receipt_id})
    return UploadResult(receipt_id=receipt_id, file_name=file_name, queued=queued)
