#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
One underwriting request: extract every upload, parse the application, analyze the
statements, reconcile.

Statements are sorted by file name before the fan-out and collected in submission order,
so the merged analysis does not depend on upload order or on which worker finishes first.

CLI:
  python -m pipeline APPLICATION [STATEMENT ...]
"""

from __future__ import annotations

import json
import logging
import mimetypes
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

import Application_extractor as appx
import Document_reader as reader
import Statements_extractor as stx
import config
from reconcile import reconcile
from resilient import RemoteBackend, RetriesExhausted

log = logging.getLogger("pipeline")


@dataclass
class UploadedFile:
    file_name: Optional[str]
    data: bytes
    declared_type: str = ""


def extract_document(upload: UploadedFile, backend: Optional[RemoteBackend] = None) -> reader.ExtractedDocument:
    """Remote backend first when configured; local extraction when it gives up."""
    if backend is not None:
        try:
            return backend.parse_document(upload.data, upload.declared_type, upload.file_name)
        except (RetriesExhausted, reader.ExtractionFailure, requests.RequestException, ValueError) as e:
            log.warning("remote parse failed for %s, using local extraction: %s", upload.file_name, e)
    return reader.extract(upload.data, upload.declared_type, upload.file_name)

def analyze_application(upload: Optional[UploadedFile],
                        backend: Optional[RemoteBackend] = None) -> Tuple[Dict[str, Any], Optional[str]]:
    if upload is None:
        return {}, "No application provided"
    try:
        doc = extract_document(upload, backend)
    except reader.ExtractionFailure as e:
        log.warning("application %s needs manual entry: %s", upload.file_name, e)
        return appx.parse_application("", fallback_name=upload.file_name), str(e)
    return appx.parse_application(doc.text, fallback_name=upload.file_name), None

def _collect_one(upload: UploadedFile, backend: Optional[RemoteBackend]) -> stx.StatementData:
    try:
        doc = extract_document(upload, backend)
    except reader.ExtractionFailure as e:
        log.warning("statement %s could not be read: %s", upload.file_name, e)
        return stx.StatementData(file_name=upload.file_name, bank="generic", error=str(e))
    return stx.collect_statement(doc)

def analyze_upload(application: Optional[UploadedFile], statements: Sequence[UploadedFile],
                   backend: Optional[RemoteBackend] = None,
                   max_workers: int = config.MAX_PARALLEL_DOCS) -> Dict[str, Any]:
    ordered = stx.order_documents(list(statements or []))
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        app_job = pool.submit(analyze_application, application, backend)
        parts = list(pool.map(lambda u: _collect_one(u, backend), ordered))
        app_fields, app_error = app_job.result()

    if parts:
        bank = stx.summarize_statements(parts)
    else:
        bank = stx.BankAnalysisResult.failed("No bank statements provided")

    reconciled = reconcile(app_fields, stx.bank_fields(bank), estimated=bank.degraded,
                           error=app_error or bank.error_message)
    out = reconciled.to_dict()
    out["bank"] = bank.to_dict()
    return out

# ---------------- CLI ----------------
def _load(path: str) -> UploadedFile:
    p = Path(path)
    return UploadedFile(p.name, p.read_bytes(), mimetypes.guess_type(p.name)[0] or "")

def main(argv: Optional[List[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        print("usage: python -m pipeline APPLICATION [STATEMENT ...]", file=sys.stderr)
        return 2
    logging.basicConfig(level=logging.INFO)
    result = analyze_upload(_load(args[0]), [_load(a) for a in args[1:]],
                            backend=RemoteBackend.from_config())
    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
