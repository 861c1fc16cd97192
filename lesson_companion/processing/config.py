from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


@dataclass
class ProcessingConfig:
    """
    Runtime settings for the worker process. Defaults mirror production:
    two concurrent jobs, a three minute lease renewed every minute, and
    three attempts with 5s/10s/20s backoff.
    """

    database_url: str = "sqlite+pysqlite:///./data/lesson_companion.db"
    redis_url: str = "redis://localhost:6379/0"
    queue_name: str = "content-processing"
    upload_storage_root: str = "./data"
    whoosh_index_dir: Optional[str] = None

    gemini_api_key: Optional[str] = None
    analysis_model: str = "gemini-2.5-pro"
    vision_model: str = "gemini-2.5-flash"
    conversion_service_url: str = "http://localhost:3000"
    transcript_service_url: Optional[str] = None
    pdf_ocr_backend: str = "vision"
    analyze_native_documents: bool = False

    concurrency: int = 2
    max_attempts: int = 3
    backoff_seconds: float = 5.0
    lease_seconds: float = 180.0
    lease_renew_seconds: float = 60.0
    poll_interval_seconds: float = 1.0

    fetch_timeout_seconds: float = 30.0
    conversion_timeout_seconds: float = 120.0
    model_timeout_seconds: float = 150.0

    min_extracted_chars: int = 50
    persist_retries: int = 3

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.lease_renew_seconds >= self.lease_seconds:
            raise ValueError("lease_renew_seconds must be shorter than lease_seconds")
        for name in ("fetch_timeout_seconds", "conversion_timeout_seconds", "model_timeout_seconds"):
            if getattr(self, name) >= self.lease_seconds:
                raise ValueError(f"{name} must be shorter than lease_seconds")
        if self.pdf_ocr_backend not in ("vision", "docling"):
            raise ValueError(f"Unsupported PDF_OCR_BACKEND: {self.pdf_ocr_backend}")

    @classmethod
    def from_env(cls) -> "ProcessingConfig":
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite+pysqlite:///./data/lesson_companion.db"),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            queue_name=os.getenv("QUEUE_NAME", "content-processing"),
            upload_storage_root=os.getenv("UPLOAD_STORAGE_ROOT", "./data"),
            whoosh_index_dir=os.getenv("WHOOSH_DIR") or None,
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            analysis_model=os.getenv("GEMINI_ANALYSIS_MODEL", "gemini-2.5-pro"),
            vision_model=os.getenv("GEMINI_VISION_MODEL", "gemini-2.5-flash"),
            conversion_service_url=os.getenv("CONVERSION_SERVICE_URL", "http://localhost:3000"),
            transcript_service_url=os.getenv("TRANSCRIPT_SERVICE_URL") or None,
            pdf_ocr_backend=os.getenv("PDF_OCR_BACKEND", "vision"),
            analyze_native_documents=os.getenv("ANALYZE_NATIVE_DOCUMENTS", "false").lower() in ("1", "true", "yes"),
            concurrency=_env_int("WORKER_CONCURRENCY", "2"),
            max_attempts=_env_int("JOB_MAX_ATTEMPTS", "3"),
            backoff_seconds=_env_float("JOB_BACKOFF_SECONDS", "5"),
            lease_seconds=_env_float("JOB_LEASE_SECONDS", "180"),
            lease_renew_seconds=_env_float("JOB_LEASE_RENEW_SECONDS", "60"),
            poll_interval_seconds=_env_float("WORKER_POLL_SECONDS", "1"),
            fetch_timeout_seconds=_env_float("FETCH_TIMEOUT_SECONDS", "30"),
            conversion_timeout_seconds=_env_float("CONVERSION_TIMEOUT_SECONDS", "120"),
            model_timeout_seconds=_env_float("MODEL_TIMEOUT_SECONDS", "150"),
            min_extracted_chars=_env_int("MIN_EXTRACTED_CHARS", "50"),
            persist_retries=_env_int("PERSIST_RETRIES", "3"),
        )
