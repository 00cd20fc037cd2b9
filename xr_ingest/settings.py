"""
Config-driven limits for archive ingestion.

All values come from environment variables (a local .env is loaded by the
entry points). Malformed values fall back to the default instead of raising,
so a typo in the environment never breaks import.

Adding a new limit: extend the dataclass, read it in the matching get_*()
factory and honor it in the stage that owns it.
"""

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    """Read an integer env var, returning `default` on missing/invalid."""
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ArchiveLimits:
    """Resource limits applied before and during extraction."""

    max_archive_bytes: int = 100 * 1024 * 1024
    max_entries: int = 10_000
    max_total_uncompressed_bytes: int = 1024 ** 3
    max_compression_ratio: int = 200
    allow_rar: bool = False


@dataclass(frozen=True)
class BatchConfig:
    """Pacing and retry policy for tile uploads."""

    batch_size: int = 10
    delay_between_batches: float = 0.35  # seconds
    max_retries: int = 3
    retry_delay: float = 1.0  # seconds, multiplied by the attempt number
    progress_every: int = 5


@dataclass(frozen=True)
class RateLimitConfig:
    """Fixed-window request budget."""

    max_requests: int
    window_seconds: float


def get_archive_limits() -> ArchiveLimits:
    """Read archive limits from environment variables."""
    return ArchiveLimits(
        max_archive_bytes=_env_int("XR_MAX_ARCHIVE_BYTES", 100 * 1024 * 1024),
        max_entries=_env_int("XR_MAX_ENTRIES", 10_000),
        max_total_uncompressed_bytes=_env_int("XR_MAX_TOTAL_UNCOMPRESSED_BYTES", 1024 ** 3),
        max_compression_ratio=_env_int("XR_MAX_COMPRESSION_RATIO", 200),
        allow_rar=_env_bool("XR_ALLOW_RAR", False),
    )


def get_batch_config(batch_size: int = None) -> BatchConfig:
    """
    Read upload batching from environment variables.

    Args:
        batch_size: Route-specific batch size; overrides XR_UPLOAD_BATCH_SIZE.
    """
    if batch_size is None:
        batch_size = _env_int("XR_UPLOAD_BATCH_SIZE", 10)
    return BatchConfig(
        batch_size=max(1, batch_size),
        delay_between_batches=_env_int("XR_UPLOAD_BATCH_DELAY_MS", 350) / 1000.0,
        max_retries=max(1, _env_int("XR_UPLOAD_MAX_RETRIES", 3)),
        retry_delay=_env_int("XR_UPLOAD_RETRY_DELAY_MS", 1000) / 1000.0,
        progress_every=max(1, _env_int("XR_PROGRESS_EVERY", 5)),
    )


DEFAULT_RATE_LIMIT = RateLimitConfig(
    max_requests=_env_int("RATE_LIMIT_MAX_REQUESTS", 100),
    window_seconds=_env_int("RATE_LIMIT_WINDOW_MS", 900_000) / 1000.0,  # 15 minutes
)

UPLOAD_RATE_LIMIT = RateLimitConfig(
    max_requests=_env_int("UPLOAD_RATE_LIMIT_MAX_REQUESTS", 10),
    window_seconds=_env_int("UPLOAD_RATE_LIMIT_WINDOW_MS", 3_600_000) / 1000.0,  # 1 hour
)

RATE_LIMIT_SWEEP_SECONDS = _env_int("RATE_LIMIT_SWEEP_SECONDS", 600)

# Batch sizes used by the two upload routes
DIRECT_UPLOAD_BATCH_SIZE = 10
PREUPLOADED_BATCH_SIZE = 12

STORAGE_BUCKET = os.environ.get("XR_STORAGE_BUCKET", "files")
PRODUCTS_TABLE = os.environ.get("XR_PRODUCTS_TABLE", "products")


def is_development() -> bool:
    """True when error events may carry stack traces."""
    return os.environ.get("APP_ENV", "production").strip().lower() == "development"
