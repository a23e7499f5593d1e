"""Receipt worker configuration: all values from environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class WorkerConfig:
    """Immutable configuration loaded once at startup."""

    api_key: str = field(default_factory=lambda: os.getenv("WORKER_API_KEY", "demo-api-key-change-me"))
    worker_url: str = field(default_factory=lambda: os.getenv("WORKER_URL", "http://localhost:8001"))

    # Google Gemini
    gemini_api_key: str = field(default_factory=lambda: os.getenv("GEMINI_API_KEY", ""))
    gemini_model: str = field(default_factory=lambda: os.getenv("GEMINI_MODEL", "models/gemini-2.5-flash"))
    gemini_api_base: str = field(
        default_factory=lambda: os.getenv("GEMINI_API_BASE", "https://generativelanguage.googleapis.com")
    )

    # Convex document database
    convex_url: str = field(default_factory=lambda: os.getenv("CONVEX_URL", ""))
    convex_deploy_key: str = field(default_factory=lambda: os.getenv("CONVEX_DEPLOY_KEY", ""))

    # Schematic entitlements
    schematic_api_key: str = field(default_factory=lambda: os.getenv("SCHEMATIC_API_KEY", ""))
    schematic_api_base: str = field(
        default_factory=lambda: os.getenv("SCHEMATIC_API_BASE", "https://api.schematichq.com")
    )

    # Pipeline tuning
    fetch_timeout: float = field(default_factory=lambda: float(os.getenv("FETCH_TIMEOUT_SECONDS", "30")))
    retry_max_attempts: int = field(default_factory=lambda: int(os.getenv("RETRY_MAX_ATTEMPTS", "5")))
    retry_base_delay: float = field(default_factory=lambda: float(os.getenv("RETRY_BASE_DELAY_SECONDS", "2.0")))
    job_retries: int = field(default_factory=lambda: int(os.getenv("JOB_RETRIES", "3")))
    job_retry_delay: float = field(default_factory=lambda: float(os.getenv("JOB_RETRY_DELAY_SECONDS", "1.0")))

    # Observability
    otel_endpoint: str = field(default_factory=lambda: os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", ""))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    @property
    def gemini_configured(self) -> bool:
        """True when an AI provider credential is present."""
        return bool(self.gemini_api_key)


config = WorkerConfig()
