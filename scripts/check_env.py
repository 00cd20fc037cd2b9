#!/usr/bin/env python3
"""
Check that required environment variables are set.
Loads .env from project root. Use before starting the app or in CI.
Usage: python scripts/check_env.py
"""

import os
import sys
from pathlib import Path

from dotenv import load_dotenv

# Project root (parent of scripts/)
PROJECT_ROOT = Path(__file__).resolve().parents[1]
ENV_PATH = PROJECT_ROOT / ".env"

# Required for the gateway
REQUIRED = [
    "SUPABASE_URL",
    "SUPABASE_ANON_KEY",
    "FLASK_SECRET_KEY",
]

# Optional; defaults apply when unset
OPTIONAL = [
    "SUPABASE_SERVICE_ROLE_KEY",
    "XR_STORAGE_BUCKET",
    "XR_PRODUCTS_TABLE",
    "XR_MAX_ARCHIVE_BYTES",
    "XR_ALLOW_RAR",
    "XR_UPLOAD_BATCH_SIZE",
    "UPLOAD_RATE_LIMIT_MAX_REQUESTS",
    "UPLOAD_RATE_LIMIT_WINDOW_MS",
    "APP_ENV",
]


def _load_dotenv():
    if ENV_PATH.exists():
        load_dotenv(ENV_PATH)
    else:
        load_dotenv()


def _is_set(key: str) -> bool:
    val = os.environ.get(key)
    return val is not None and str(val).strip() != ""


def main() -> int:
    _load_dotenv()

    missing = [key for key in REQUIRED if not _is_set(key)]

    print("Environment check (from .env or shell)")
    print("-" * 50)
    for key in REQUIRED:
        status = "OK" if _is_set(key) else "MISSING"
        print(f"  {key}: {status}")
    for key in OPTIONAL:
        status = "set" if _is_set(key) else "default"
        print(f"  {key} (optional): {status}")
    print("-" * 50)

    if missing:
        print("Missing required:", ", ".join(missing))
        print("Copy .env.example to .env and fill in values.")
        return 1
    print("All required keys are set.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
