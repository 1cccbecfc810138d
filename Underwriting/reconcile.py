# -*- coding: utf-8 -*-
"""
Merge application-parser output with bank-analysis output into one ApplicationRecord.

The record only ever holds business data. Anything about *how* it was obtained
(missing fields, estimates, errors) lives in ExtractionProvenance next to it, so a
saved record cannot carry stale review markers.

Required fields still missing after the merge get DEFAULTS and are listed in
provenance.missing_fields; requires_manual_entry stays True until confirm() builds a
clean record from the user's edits.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from Application_extractor import INDUSTRIES, normalize_state, parse_yes_no

log = logging.getLogger("reconcile")

REQUIRED_FIELDS = (
    "business_name", "credit_score", "avg_daily_balance", "avg_monthly_revenue",
    "time_in_business", "state", "industry", "funding_requested",
)

DEFAULTS: Dict[str, Any] = {
    "business_name": "Unknown Business",
    "credit_score": 650,
    "avg_daily_balance": 0.0,
    "avg_monthly_revenue": 0.0,
    "time_in_business": 24,
    "state": "CA",
    "industry": "Retail",
    "funding_requested": 75000.0,
}

# defaulted to False without forcing review; listed in provenance.assumed_fields
ASSUMED_FLAGS = ("has_prior_defaults", "needs_first_position")

FINANCIAL_FIELDS = ("avg_daily_balance", "avg_monthly_revenue", "monthly_deposits", "daily_balances",
                    "largest_deposit", "deposit_consistency", "ending_balance")


class ReviewRequired(RuntimeError):
    """The record still carries unreviewed defaults or estimates."""


class RecordValidationError(ValueError):
    def __init__(self, problems: List[str]):
        super().__init__("invalid application record: " + "; ".join(problems))
        self.problems = problems


@dataclass
class ApplicationRecord:
    business_name: str
    credit_score: int
    state: str
    industry: str
    time_in_business: int
    avg_daily_balance: float
    avg_monthly_revenue: float
    funding_requested: float
    funding_purpose: Optional[str] = None
    owner_name: Optional[str] = None
    has_existing_loans: bool = False
    has_prior_defaults: bool = False
    needs_first_position: bool = False
    negative_days: int = 0
    nsfs: int = 0
    existing_mca_count: int = 0
    monthly_deposits: List[float] = field(default_factory=list)
    daily_balances: List[Dict[str, Any]] = field(default_factory=list)
    largest_deposit: float = 0.0
    deposit_consistency: float = 0.0
    ending_balance: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExtractionProvenance:
    missing_fields: List[str] = field(default_factory=list)
    requires_manual_entry: bool = False
    error: Optional[str] = None
    estimated_fields: List[str] = field(default_factory=list)
    assumed_fields: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ExtractionProvenance":
        data = data or {}
        return cls(
            missing_fields=list(data.get("missing_fields") or []),
            requires_manual_entry=bool(data.get("requires_manual_entry")),
            error=data.get("error"),
            estimated_fields=list(data.get("estimated_fields") or []),
            assumed_fields=list(data.get("assumed_fields") or []),
        )


@dataclass
class ReconciledApplication:
    record: ApplicationRecord
    provenance: ExtractionProvenance

    def to_dict(self) -> Dict[str, Any]:
        return {"application": self.record.to_dict(), "provenance": self.provenance.to_dict()}


RECORD_FIELDS = tuple(f.name for f in fields(ApplicationRecord))
_INT_FIELDS = {"credit_score", "time_in_business", "negative_days", "nsfs", "existing_mca_count"}
_FLOAT_FIELDS = {"avg_daily_balance", "avg_monthly_revenue", "funding_requested", "largest_deposit",
                 "deposit_consistency", "ending_balance"}
_BOOL_FIELDS = {"has_existing_loans", "has_prior_defaults", "needs_first_position"}
_STR_FIELDS = {"business_name", "state", "industry", "funding_purpose", "owner_name"}
_NON_NEGATIVE = {"time_in_business", "avg_daily_balance", "avg_monthly_revenue", "negative_days", "nsfs",
                 "existing_mca_count", "largest_deposit"}

# ---------------- Helpers ----------------
def is_missing(v: Any) -> bool:
    if v is None:
        return True
    if isinstance(v, float) and math.isnan(v):
        return True
    if isinstance(v, str) and not v.strip():
        return True
    return False

def _number(v: Any) -> Optional[float]:
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        f = float(v)
    elif isinstance(v, str):
        try:
            f = float(v.replace("$", "").replace(",", "").strip())
        except ValueError:
            return None
    else:
        return None
    return None if math.isnan(f) or math.isinf(f) else f

def coerce_field(name: str, v: Any) -> Any:
    """Typed value for one record field, or None when it is unusable."""
    if is_missing(v):
        return None
    if name in _INT_FIELDS or name in _FLOAT_FIELDS:
        f = _number(v)
        if f is None:
            return None
        if name in _NON_NEGATIVE and f < 0:
            return None
        if name == "credit_score" and not 300 <= f <= 850:
            return None
        if name == "funding_requested" and f <= 0:
            return None
        if name == "deposit_consistency":
            f = max(0.0, min(100.0, f))
        return int(round(f)) if name in _INT_FIELDS else f
    if name in _BOOL_FIELDS:
        if isinstance(v, bool):
            return v
        return parse_yes_no(str(v)) if not isinstance(v, (int, float)) else bool(v)
    if name == "state":
        return normalize_state(str(v))
    if name == "industry":
        s = str(v).strip()
        for known in INDUSTRIES:
            if known.lower() == s.lower():
                return known
        return s
    if name in _STR_FIELDS:
        return str(v).strip()
    if name == "monthly_deposits":
        vals = [_number(x) for x in (v or [])]
        return [x for x in vals if x is not None]
    if name == "daily_balances":
        return [dict(x) for x in (v or []) if isinstance(x, Mapping)]
    return v

# ---------------- Reconcile ----------------
def reconcile(app_fields: Optional[Mapping[str, Any]], bank_fields: Optional[Mapping[str, Any]],
              estimated: bool = False, error: Optional[str] = None) -> ReconciledApplication:
    """
    Application values win; bank values fill only what the application did not give.
    `estimated` marks the bank values as coming from the synthetic fallback.
    """
    merged: Dict[str, Any] = {}
    for k, v in (app_fields or {}).items():
        if k in RECORD_FIELDS:
            c = coerce_field(k, v)
            if c is not None:
                merged[k] = c

    from_bank: List[str] = []
    for k, v in (bank_fields or {}).items():
        if k in RECORD_FIELDS and k not in merged:
            c = coerce_field(k, v)
            if c is not None:
                merged[k] = c
                from_bank.append(k)

    missing = [f for f in REQUIRED_FIELDS if merged.get(f) is None]
    for f in missing:
        merged[f] = DEFAULTS[f]
    assumed = [f for f in ASSUMED_FLAGS if merged.get(f) is None]
    for f in assumed:
        merged[f] = False

    estimated_fields = [f for f in from_bank if f in FINANCIAL_FIELDS] if estimated else []
    provenance = ExtractionProvenance(
        missing_fields=missing,
        requires_manual_entry=bool(missing or estimated_fields or error),
        error=error,
        estimated_fields=estimated_fields,
        assumed_fields=assumed,
    )
    if provenance.requires_manual_entry:
        log.warning("application needs review: missing=%s estimated=%s error=%s",
                    missing, estimated_fields, error)
    record = ApplicationRecord(**{k: v for k, v in merged.items() if k in RECORD_FIELDS})
    return ReconciledApplication(record, provenance)

def record_from_dict(data: Mapping[str, Any]) -> ApplicationRecord:
    """Strict build: every required field must be present and valid. No defaults applied."""
    values: Dict[str, Any] = {}
    problems: List[str] = []
    for name in RECORD_FIELDS:
        if name not in data:
            continue
        c = coerce_field(name, data.get(name))
        if c is None and not is_missing(data.get(name)):
            problems.append(f"{name} has an invalid value")
        elif c is not None:
            values[name] = c
    for name in REQUIRED_FIELDS:
        if name not in values and f"{name} has an invalid value" not in problems:
            problems.append(f"{name} is required")
    if problems:
        raise RecordValidationError(problems)
    return ApplicationRecord(**values)

def confirm(record: Any, edits: Optional[Mapping[str, Any]] = None) -> ApplicationRecord:
    """Human re-save: apply edits and return a clean record (no provenance attached)."""
    base = record.to_dict() if isinstance(record, ApplicationRecord) else dict(record or {})
    base.update(edits or {})
    return record_from_dict({k: v for k, v in base.items() if k in RECORD_FIELDS})

def ensure_submittable(provenance: Optional[ExtractionProvenance]) -> None:
    if provenance is None:
        raise ReviewRequired("application must be reviewed and saved before submission")
    if provenance.requires_manual_entry:
        fields_ = provenance.missing_fields + provenance.estimated_fields
        raise ReviewRequired("application must be reviewed and re-saved before submission"
                             + (f" (unconfirmed: {', '.join(fields_)})" if fields_ else ""))

# ---------------- Persistence ----------------
def persist_application(store: Any, record: ApplicationRecord, user_id: Optional[str] = None) -> Dict[str, Any]:
    """Insert only the columns the applications table actually has."""
    row = record.to_dict()
    if user_id:
        row["user_id"] = user_id
    row["created_at"] = datetime.now(timezone.utc).isoformat()

    columns = set(store.table_columns("applications"))
    dropped = sorted(k for k in row if k not in columns)
    if dropped:
        log.warning("applications: skipping fields not in schema: %s", dropped)
    payload = {k: v for k, v in row.items() if k in columns}
    return store.insert_application(payload)
