"""Error taxonomy for the extraction pipeline.

``retriable`` tells the job scheduler whether re-running the whole job can
help. Local transient failures are already retried by the backoff executor
before they get here.
"""

from __future__ import annotations

from enum import Enum


class ReceiptWorkerError(Exception):
    retriable: bool = True


class ConfigurationError(ReceiptWorkerError):
    """A required credential or setting is missing."""

    retriable = False


class FetchError(ReceiptWorkerError):
    """The document could not be downloaded."""


class EmptyDocumentError(ReceiptWorkerError):
    """The download succeeded but returned zero bytes."""


class ExtractionFailure(str, Enum):
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    NETWORK_UNREACHABLE = "network_unreachable"
    UNKNOWN = "unknown"


class ExtractionError(ReceiptWorkerError):
    """The AI provider call failed."""

    def __init__(self, message: str, reason: ExtractionFailure = ExtractionFailure.UNKNOWN) -> None:
        super().__init__(message)
        self.reason = reason


class ParseError(ReceiptWorkerError):
    """The model output is not valid JSON."""


class InvalidShapeError(ReceiptWorkerError):
    """The parsed model output is not a JSON object."""


class PersistenceError(ReceiptWorkerError):
    """The database rejected or never received a write."""


class UploadRejected(ReceiptWorkerError):
    retriable = False
