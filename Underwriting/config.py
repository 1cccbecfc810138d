#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Environment-driven settings shared by the extractors, the pipeline and the Flask app.

Values are read once at import; app.py calls load_dotenv() before importing anything
that reads from here.
"""

import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    try:
        return int(raw) if raw not in (None, "") else default
    except ValueError:
        return default

def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    try:
        return float(raw) if raw not in (None, "") else default
    except ValueError:
        return default


# ---------------- Storage ----------------
SUPABASE_URL = os.environ.get("SUPABASE_URL")
SUPABASE_SERVICE_ROLE = os.environ.get("SUPABASE_SERVICE_ROLE")

# ---------------- Remote backend ----------------
REMOTE_BACKEND_URL = (os.environ.get("REMOTE_BACKEND_URL") or "").strip()
REMOTE_TIMEOUT = _env_float("REMOTE_TIMEOUT", 30.0)
REMOTE_MAX_RETRIES = _env_int("REMOTE_MAX_RETRIES", 3)
REMOTE_BACKOFF_BASE = _env_float("REMOTE_BACKOFF_BASE", 1.0)

# ---------------- OCR ----------------
TESS_LANG = os.environ.get("TESS_LANG", "eng")
TESS_PSM = 6
OCR_DPI = _env_int("OCR_DPI", 300)
OCR_TIMEOUT_SECONDS = _env_float("OCR_TIMEOUT_SECONDS", 60.0)
MIN_TEXT_CHARS = _env_int("MIN_TEXT_CHARS", 50)

# ---------------- Pipeline ----------------
MAX_PARALLEL_DOCS = max(1, _env_int("MAX_PARALLEL_DOCS", 3))

# ---------------- Flask ----------------
APP_SECRET = os.environ.get("APP_SECRET", "dev-secret")
MAX_CONTENT_LENGTH = _env_int("MAX_CONTENT_LENGTH_MB", 50) * 1024 * 1024
CORS_ORIGINS = [o.strip() for o in os.environ.get(
    "CORS_ORIGINS", "http://127.0.0.1:5055,http://localhost:5055").split(",") if o.strip()]
