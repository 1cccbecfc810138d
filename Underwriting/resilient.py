# -*- coding: utf-8 -*-
"""
Retry with exponential backoff, plus the optional remote parsing / matching backend.

Backoff: base, 2*base, 4*base ... between attempts; max_retries counts attempts, not
re-tries. Only transient failures (timeouts, dropped connections, HTTP 429 / 5xx) are
retried; everything else propagates on the first attempt.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import requests

import config
from Document_reader import ExtractedDocument, ExtractionFailure

log = logging.getLogger("resilient")

T = TypeVar("T")


class RetriesExhausted(RuntimeError):
    def __init__(self, label: str, attempts: int, last_error: BaseException):
        super().__init__(f"{label} failed after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def _status_of(exc: BaseException) -> Optional[int]:
    resp = getattr(exc, "response", None)
    for src in (resp, exc):
        for attr in ("status_code", "code"):
            v = getattr(src, attr, None) if src is not None else None
            if isinstance(v, int) and not isinstance(v, bool):
                return v
    return None

def is_rate_limited(exc: BaseException) -> bool:
    msg = str(exc).lower()
    return _status_of(exc) == 429 or "rate limit" in msg or "too many requests" in msg

def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, (requests.Timeout, requests.ConnectionError, TimeoutError, ConnectionError)):
        return True
    status = _status_of(exc)
    if status is not None:
        return status == 429 or status >= 500
    return is_rate_limited(exc)

def call_with_retries(
    operation: Callable[[], T],
    max_retries: int = 3,
    is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    base_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "call",
) -> T:
    attempts = max(1, int(max_retries))
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as e:
            attempt += 1
            if not is_retryable(e):
                raise
            if attempt >= attempts:
                log.warning("%s: giving up after %d attempt(s): %s", label, attempt, e)
                raise RetriesExhausted(label, attempt, e) from e
            backoff = base_delay * (2 ** (attempt - 1))
            log.info("%s: attempt %d failed (%s); retrying in %.1fs", label, attempt, e, backoff)
            sleep(backoff)


class RemoteBackend:
    """HTTP client for an external parsing / matching service."""

    def __init__(self, base_url: str, timeout: float = config.REMOTE_TIMEOUT,
                 max_retries: int = config.REMOTE_MAX_RETRIES, backoff_base: float = config.REMOTE_BACKOFF_BASE,
                 session: Optional[requests.Session] = None, sleep: Callable[[float], None] = time.sleep):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.session = session or requests.Session()
        self.sleep = sleep

    @classmethod
    def from_config(cls) -> Optional["RemoteBackend"]:
        if not config.REMOTE_BACKEND_URL:
            return None
        return cls(config.REMOTE_BACKEND_URL)

    def _post(self, path: str, label: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"

        def op():
            resp = self.session.post(url, timeout=self.timeout, **kwargs)
            resp.raise_for_status()
            return resp.json()

        return call_with_retries(op, max_retries=self.max_retries, base_delay=self.backoff_base,
                                 sleep=self.sleep, label=label)

    def parse_document(self, data: bytes, declared_type: str, file_name: Optional[str] = None) -> ExtractedDocument:
        files = {"file": (file_name or "upload", data, declared_type or "application/octet-stream")}
        body = self._post("/parse", f"remote parse {file_name or ''}".strip(), files=files,
                          data={"type": declared_type or ""})
        if not isinstance(body, dict):
            raise ExtractionFailure("remote backend returned an unexpected payload", ["remote"])
        text = body.get("text") or body.get("extractedText") or ""
        rows = body.get("rows")
        if not text.strip() and not rows:
            raise ExtractionFailure("remote backend returned no text", ["remote"])
        return ExtractedDocument(text=text, method="remote", rows=rows if isinstance(rows, list) else None,
                                 file_name=file_name, declared_type=declared_type or "")

    def match_lenders(self, application: Dict[str, Any], lenders: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        body = self._post("/match", "remote match", json={"application": application, "lenders": list(lenders)})
        if isinstance(body, dict):
            body = body.get("matches") or body.get("lenders") or []
        return list(body or [])
