#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from flask import Blueprint, current_app, jsonify, request
from werkzeug.utils import secure_filename

import Application_extractor as appx
import Document_reader as reader
import lenders_rules as rules
import notify
import pipeline
from reconcile import (ExtractionProvenance, RecordValidationError, ReviewRequired, confirm,
                       persist_application, record_from_dict)
from storage import StorageRateLimited, SupabaseStore

bp = Blueprint("underwrite", __name__)
log = logging.getLogger("underwrite")

# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------
def _deps() -> Dict[str, Any]:
    return current_app.extensions.setdefault("underwriting", {"store": None, "backend": None})

def _store():
    deps = _deps()
    if deps.get("store") is None:
        deps["store"] = SupabaseStore.from_env()
    return deps["store"]

def _current_user() -> Tuple[Optional[str], bool]:
    user_id = (request.headers.get("X-User-Id") or "").strip() or None
    is_admin = (request.headers.get("X-User-Admin") or "").strip().lower() in ("1", "true", "yes")
    return user_id, is_admin

def _upload(fs_obj, declared_type: Optional[str] = None) -> pipeline.UploadedFile:
    name = secure_filename(fs_obj.filename or "") or None
    return pipeline.UploadedFile(name, fs_obj.read(), declared_type or fs_obj.mimetype or "")

def _json_body() -> Optional[Dict[str, Any]]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None

# ------------------------------------------------------------------------------
# Routes
# ------------------------------------------------------------------------------
@bp.post("/extract")
def extract_only():
    try:
        f = request.files.get("file")
        if not f:
            return jsonify({"error": "Missing file"}), 400
        upload = _upload(f, request.form.get("type"))
        try:
            doc = pipeline.extract_document(upload, _deps().get("backend"))
        except reader.ExtractionFailure as e:
            log.warning("extraction failed for %s: %s", upload.file_name, e)
            return jsonify({
                "text": "",
                "parsedFields": appx.parse_application("", fallback_name=upload.file_name),
                "method": "manual",
                "requiresManualEntry": True,
                "attempted": e.attempted,
                "error": e.reason,
            })
        fields = appx.parse_application(doc.text, fallback_name=upload.file_name)
        return jsonify({"text": doc.text, "parsedFields": fields, "method": doc.method})
    except Exception as e:
        log.exception("extract failed")
        return jsonify({"error": str(e)}), 500

@bp.post("/analyze")
def analyze():
    try:
        app_file = request.files.get("application")
        stmt_files = request.files.getlist("statements") or request.files.getlist("statements[]")
        if not app_file and not stmt_files:
            return jsonify({"error": "Missing application or statements"}), 400
        application = _upload(app_file) if app_file else None
        statements: List[pipeline.UploadedFile] = [_upload(f) for f in stmt_files]
        result = pipeline.analyze_upload(application, statements, backend=_deps().get("backend"))
        return jsonify(result)
    except Exception as e:
        log.exception("analyze failed")
        return jsonify({"error": str(e)}), 500

@bp.post("/match")
def match_lenders():
    try:
        data = _json_body()
        if not data or not isinstance(data.get("application"), dict):
            return jsonify({"error": "Missing application"}), 400
        application = data["application"]
        lenders = data.get("lenders")
        if lenders is not None:
            if not isinstance(lenders, list):
                return jsonify({"error": "lenders must be a list"}), 400
            results = rules.match(application, lenders)
        else:
            user_id, is_admin = _current_user()
            results = rules.match_for_user(_store(), application, user_id, is_admin)
        return jsonify({"matches": [r.to_dict() for r in results]})
    except rules.MatchingInputError as e:
        return jsonify({"error": str(e)}), 400
    except StorageRateLimited as e:
        log.warning("match: %s", e)
        return jsonify({"error": "Storage is rate limited, try again shortly"}), 429
    except Exception as e:
        log.exception("match failed")
        return jsonify({"error": str(e)}), 500

@bp.post("/applications")
def save_application():
    try:
        data = _json_body()
        if not data or not isinstance(data.get("application"), dict):
            return jsonify({"error": "Missing application"}), 400
        record = confirm(data["application"], data.get("edits") or {})
        user_id, _ = _current_user()
        saved = persist_application(_store(), record, user_id=user_id)
        return jsonify({"application": record.to_dict(),
                        "provenance": ExtractionProvenance().to_dict(),
                        "saved": saved}), 201
    except RecordValidationError as e:
        return jsonify({"error": str(e), "problems": e.problems}), 400
    except StorageRateLimited as e:
        log.warning("save application: %s", e)
        return jsonify({"error": "Storage is rate limited, try again shortly"}), 429
    except Exception as e:
        log.exception("save application failed")
        return jsonify({"error": str(e)}), 500

@bp.post("/submission-draft")
def submission_draft():
    try:
        data = _json_body()
        if not data or not isinstance(data.get("application"), dict) or not data.get("match"):
            return jsonify({"error": "Missing application or match"}), 400
        record = record_from_dict(data["application"])
        if data.get("applicationId"):
            # saved through /applications, which only accepts confirmed records
            provenance = ExtractionProvenance()
        elif isinstance(data.get("provenance"), dict):
            provenance = ExtractionProvenance.from_dict(data["provenance"])
        else:
            provenance = None
        subject, body = notify.build_submission_email(
            data.get("lenderName") or "",
            data["match"],
            record,
            data.get("attachments") or [],
            broker_name=data.get("brokerName"),
            provenance=provenance,
        )
        return jsonify({"subject": subject, "body": body})
    except RecordValidationError as e:
        return jsonify({"error": str(e), "problems": e.problems}), 400
    except ReviewRequired as e:
        return jsonify({"error": str(e)}), 409
    except Exception as e:
        log.exception("submission draft failed")
        return jsonify({"error": str(e)}), 500
