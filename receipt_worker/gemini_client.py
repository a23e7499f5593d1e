"""Google Gemini extraction client.

Sends the receipt PDF inline to ``generateContent`` and returns the model's
text answer, which should be a single JSON object describing the receipt.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from typing import Any

import httpx
from opentelemetry import trace

from receipt_worker.backoff import RetryPolicy, Sleep
from receipt_worker.errors import ConfigurationError, ExtractionError, ExtractionFailure, ParseError
from receipt_worker.models import ExtractedReceipt
from receipt_worker.normalizer import normalize
from receipt_worker.telemetry import SERVICE_NAME

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(SERVICE_NAME)

PROBE_TIMEOUT = 5.0
PROBE_RATE_LIMIT_PAUSE = 5.0
GENERATE_TIMEOUT = 120.0
DOCUMENT_MIME_TYPE = "application/pdf"

EXTRACTION_PROMPT = """You are an expert receipt data extraction AI. Analyze this receipt document image/PDF and extract ALL visible data.

Return ONLY a valid JSON object with NO markdown, NO code blocks, NO explanations:

{
  "merchant": {
    "name": "Store or business name",
    "address": "Full street address if visible",
    "contact": "Phone number or email if visible"
  },
  "transaction": {
    "date": "YYYY-MM-DD format (e.g., 2025-11-12)",
    "receipt_number": "Receipt, invoice, or order number",
    "payment_method": "Cash, Credit Card, Debit, Check, etc"
  },
  "items": [
    {
      "name": "Product or service name",
      "quantity": 1,
      "unitPrice": 10.99,
      "totalPrice": 10.99
    }
  ],
  "totals": {
    "subtotal": 100.00,
    "tax": 8.50,
    "total": 108.50,
    "currency": "USD"
  }
}

EXTRACTION RULES:
- Extract ONLY data visible in the document
- Do NOT fabricate or guess information
- For missing fields, use: empty string "" or 0
- Dates MUST be YYYY-MM-DD format
- All numbers MUST be numeric (not strings)
- Return ONLY the JSON object, nothing else
- If no items found, return empty array []
- Currency: detect from receipt or default to USD"""

_FENCE_RE = re.compile(r"```(?:json)?[ \t]*\n?", re.IGNORECASE)

_STATUS_FAILURES = {
    401: (ExtractionFailure.UNAUTHORIZED, "GEMINI_API_KEY is invalid or expired"),
    403: (ExtractionFailure.FORBIDDEN, "GEMINI_API_KEY lacks permissions or quota is exhausted"),
    429: (ExtractionFailure.RATE_LIMITED, "Rate limited by Gemini API"),
}


def strip_code_fences(text: str) -> str:
    """Remove markdown code-fence markers the model sometimes adds."""
    return _FENCE_RE.sub("", text).strip()


def parse_response_text(text: str) -> Any:
    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.error("JSON parse failed. Response: %s", cleaned[:500])
        raise ParseError(f"AI response is not valid JSON: {exc}") from exc


def _status_error(resp: httpx.Response) -> ExtractionError:
    reason, hint = _STATUS_FAILURES.get(resp.status_code, (ExtractionFailure.UNKNOWN, "Gemini API request failed"))
    return ExtractionError(f"{hint} ({resp.status_code} {resp.reason_phrase})", reason)


def _response_text(body: dict[str, Any]) -> str:
    candidates = body.get("candidates") or [{}]
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts if isinstance(part, dict))


class GeminiExtractor:
    """Turns PDF bytes into the model's raw JSON text."""

    def __init__(
        self,
        api_key: str,
        model: str = "models/gemini-2.5-flash",
        api_base: str = "https://generativelanguage.googleapis.com",
        client: httpx.AsyncClient | None = None,
        retry: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.api_key = api_key
        self.model = model if model.startswith("models/") else f"models/{model}"
        self.api_base = api_base.rstrip("/")
        self.client = client
        self.retry = retry or RetryPolicy(sleep=sleep)
        self.sleep = sleep

    def _require_key(self) -> None:
        if not self.api_key:
            raise ConfigurationError("GEMINI_API_KEY environment variable is not configured")

    @property
    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

    async def probe(self, http: httpx.AsyncClient) -> None:
        """Best-effort connectivity and quota check; never raises."""
        logger.info("Testing Gemini API connectivity and quota...")
        try:
            resp = await http.get(
                f"{self.api_base}/v1beta/models",
                headers=self._headers,
                timeout=PROBE_TIMEOUT,
            )
        except httpx.HTTPError as exc:
            logger.warning("Connectivity test warning: cannot reach %s (%s)", self.api_base, exc)
            return

        if resp.is_success:
            logger.info("Gemini API connectivity confirmed")
        elif resp.status_code in (401, 403):
            logger.warning("API key issue (%d): check GEMINI_API_KEY", resp.status_code)
        elif resp.status_code == 429:
            logger.warning("Rate limited (429) during probe, pausing %.0fs", PROBE_RATE_LIMIT_PAUSE)
            await self.sleep(PROBE_RATE_LIMIT_PAUSE)
        else:
            logger.warning("Gemini API returned %d: %s", resp.status_code, resp.reason_phrase)

    async def _generate(self, http: httpx.AsyncClient, payload: dict[str, Any]) -> str:
        try:
            resp = await http.post(
                f"{self.api_base}/v1beta/{self.model}:generateContent",
                json=payload,
                headers=self._headers,
                timeout=GENERATE_TIMEOUT,
            )
        except httpx.HTTPError as exc:
            raise ExtractionError(
                f"Cannot reach Gemini API at {self.api_base}: {exc}",
                ExtractionFailure.NETWORK_UNREACHABLE,
            ) from exc

        if not resp.is_success:
            raise _status_error(resp)

        text = _response_text(resp.json())
        if not text:
            raise ParseError("AI response contained no text")
        return text

    async def extract(self, document: bytes) -> str:
        """Return the model's answer for *document* with code fences removed."""
        self._require_key()

        with tracer.start_as_current_span("worker.extract") as span:
            span.set_attribute("gemini.model", self.model)
            span.set_attribute("document.size_bytes", len(document))

            payload = {
                "contents": [
                    {
                        "parts": [
                            {
                                "inline_data": {
                                    "mime_type": DOCUMENT_MIME_TYPE,
                                    "data": base64.b64encode(document).decode("ascii"),
                                }
                            },
                            {"text": EXTRACTION_PROMPT},
                        ]
                    }
                ]
            }

            owns_client = self.client is None
            http = self.client or httpx.AsyncClient()
            try:
                await self.probe(http)
                logger.info("Extracting receipt data with model %s", self.model)
                try:
                    text = await self.retry.run(lambda: self._generate(http, payload))
                except ExtractionError as exc:
                    logger.error("Gemini extraction failed (%s): %s", exc.reason.value, exc)
                    raise
            finally:
                if owns_client:
                    await http.aclose()

            span.set_attribute("gemini.response_length", len(text))
            logger.info("Raw AI response length: %d", len(text))
            return strip_code_fences(text)

    async def extract_receipt(self, document: bytes) -> ExtractedReceipt:
        """Extract, parse and normalize in one go."""
        receipt = normalize(parse_response_text(await self.extract(document)))
        logger.info(
            "Receipt data extracted: merchant=%s items=%d total=%s %s",
            receipt.merchant.name,
            len(receipt.items),
            receipt.totals.total,
            receipt.totals.currency,
        )
        return receipt
