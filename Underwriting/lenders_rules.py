# -*- coding: utf-8 -*-
"""
Lender compatibility scoring.

Expected inputs:
- application: ApplicationRecord (or a dict with the same keys):
    business_name, credit_score, state ('CA'), industry, time_in_business (months),
    avg_daily_balance, avg_monthly_revenue, funding_requested,
    has_existing_loans, has_prior_defaults, existing_mca_count, negative_days
- lenders: [Lender | {"id", "name"?, "criteria": LenderCriteria | dict}]

Each lender is scored on the dimensions its criteria actually define; an undefined
bound is skipped entirely. score = round(100 * satisfied / defined), 0 when nothing is
defined. Results are ordered by score only (stable, so ties keep the input order).

Returns:
  match(application, lenders) -> List[MatchResult]
"""

from __future__ import annotations

import csv
import io
import logging
import math
import re
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from Application_extractor import INDUSTRIES, US_STATES, normalize_state

log = logging.getLogger("lenders")

# ---------------------------
# 1) Universes for the exclusion complement
# ---------------------------
ALL_STATES: Tuple[str, ...] = tuple(US_STATES)

RESTRICTED_INDUSTRIES = (
    "Cannabis", "CBD", "Adult Entertainment", "Adult Products", "Firearms", "Ammunition Sales",
    "Gambling", "Betting", "Casinos", "Loan Companies", "Financial Services Companies", "Cryptocurrency",
)
ALL_INDUSTRIES: Tuple[str, ...] = tuple(INDUSTRIES) + RESTRICTED_INDUSTRIES

REQUIRED_NUMERIC = ("credit_score", "avg_daily_balance", "avg_monthly_revenue", "time_in_business", "funding_requested")
REQUIRED_TEXT = ("state", "industry")

LENDER_NAME_ALIASES = ("name", "lender", "lender name", "lender_name", "funder", "company")
LENDER_EMAIL_ALIASES = ("email", "lender email", "lender_email", "submission email", "to")


class MatchingInputError(ValueError):
    """Application record is not fit for scoring (missing / non-numeric required field)."""


# ---------------------------
# 2) Models
# ---------------------------
@dataclass
class LenderCriteria:
    min_credit_score: Optional[int] = None
    max_credit_score: Optional[int] = None
    min_monthly_revenue: Optional[float] = None
    max_monthly_revenue: Optional[float] = None
    min_daily_balance: Optional[float] = None
    max_daily_balance: Optional[float] = None
    min_time_in_business: Optional[int] = None
    max_time_in_business: Optional[int] = None
    min_funding_amount: Optional[float] = None
    max_funding_amount: Optional[float] = None
    min_position: Optional[int] = None
    max_position: Optional[int] = None
    accepts_existing_loans: Optional[bool] = None
    accepts_prior_defaults: Optional[bool] = None
    max_negative_days: Optional[int] = None
    excluded_states: Optional[List[str]] = None
    excluded_industries: Optional[List[str]] = None

    @classmethod
    def from_row(cls, row: Optional[Mapping[str, Any]]) -> "LenderCriteria":
        """Loosely typed storage / CSV row -> criteria. Blank means unconstrained."""
        row = row or {}
        kw: Dict[str, Any] = {}
        for f in fields(cls):
            raw = row.get(f.name)
            if f.name in _INT_CRITERIA:
                kw[f.name] = _to_int(raw)
            elif f.name in _BOOL_CRITERIA:
                kw[f.name] = _to_bool(raw)
            elif f.name in ("excluded_states", "excluded_industries"):
                kw[f.name] = _split_list(raw)
            else:
                kw[f.name] = _to_float(raw)

        # legacy inclusion lists -> exclusions over the same universe
        if kw["excluded_states"] is None and _split_list(row.get("states")) is not None:
            included = {_norm_state(s) for s in _split_list(row.get("states"))}
            kw["excluded_states"] = [s for s in ALL_STATES if s not in included]
        if kw["excluded_industries"] is None and _split_list(row.get("industries")) is not None:
            included = {_norm_industry_text(i) for i in _split_list(row.get("industries"))}
            kw["excluded_industries"] = [i for i in ALL_INDUSTRIES if _norm_industry_text(i) not in included]
        return cls(**kw)

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Lender:
    id: Any
    name: str = ""
    email: Optional[str] = None
    owner_id: Optional[str] = None
    criteria: LenderCriteria = field(default_factory=LenderCriteria)


@dataclass
class MatchResult:
    lender_id: Any
    match_score: int
    match_reasons: List[str] = field(default_factory=list)
    mismatch_reasons: List[str] = field(default_factory=list)
    lender_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MatchResult":
        return cls(
            lender_id=data.get("lender_id"),
            match_score=int(data.get("match_score") or 0),
            match_reasons=list(data.get("match_reasons") or []),
            mismatch_reasons=list(data.get("mismatch_reasons") or []),
            lender_name=data.get("lender_name"),
        )


_INT_CRITERIA = {"min_credit_score", "max_credit_score", "min_time_in_business", "max_time_in_business",
                 "min_position", "max_position", "max_negative_days"}
_BOOL_CRITERIA = {"accepts_existing_loans", "accepts_prior_defaults"}

# ---------------------------
# 3) Helpers
# ---------------------------
def _norm_state(s: Optional[str]) -> str:
    s = (s or "").strip()
    return normalize_state(s) or s.upper()

def _norm_industry_text(s: Optional[str]) -> str:
    return " ".join((s or "").strip().lower().split())

def _to_float(x) -> Optional[float]:
    if x is None or isinstance(x, bool):
        return None
    if isinstance(x, str):
        x = x.replace("$", "").replace(",", "").strip()
        if not x:
            return None
    try:
        f = float(x)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(f) else f

def _to_int(x) -> Optional[int]:
    f = _to_float(x)
    return int(round(f)) if f is not None else None

def _to_bool(x) -> Optional[bool]:
    if x is None:
        return None
    if isinstance(x, bool):
        return x
    s = str(x).strip().lower()
    if s in ("true", "yes", "y", "1"):
        return True
    if s in ("false", "no", "n", "0"):
        return False
    return None

def _split_list(x) -> Optional[List[str]]:
    if x is None:
        return None
    if isinstance(x, (list, tuple, set)):
        return [str(v).strip() for v in x if str(v).strip()]
    return [p.strip() for p in re.split(r"[|;]", str(x)) if p.strip()]

def _money(v: float) -> str:
    return f"${v:,.0f}"

def _num(v: float) -> str:
    return f"{v:,.0f}" if float(v).is_integer() else f"{v:,.2f}"

def accepted_states(excluded: Optional[Sequence[str]]) -> List[str]:
    ex = {_norm_state(s) for s in excluded or []}
    return [s for s in ALL_STATES if s not in ex]

def accepted_industries(excluded: Optional[Sequence[str]]) -> List[str]:
    ex = {_norm_industry_text(i) for i in excluded or []}
    return [i for i in ALL_INDUSTRIES if _norm_industry_text(i) not in ex]

def state_accepted(state: str, excluded: Optional[Sequence[str]]) -> bool:
    st = _norm_state(state)
    if st in ALL_STATES:
        return st in accepted_states(excluded)
    # outside the known universe: only an explicit exclusion rejects it
    return st not in {_norm_state(s) for s in excluded or []}

def industry_accepted(industry: str, excluded: Optional[Sequence[str]]) -> bool:
    ind = _norm_industry_text(industry)
    universe = {_norm_industry_text(i) for i in ALL_INDUSTRIES}
    if ind in universe:
        return ind in {_norm_industry_text(i) for i in accepted_industries(excluded)}
    return ind not in {_norm_industry_text(i) for i in excluded or []}

def _as_dict(application: Any) -> Dict[str, Any]:
    if hasattr(application, "to_dict"):
        return application.to_dict()
    if isinstance(application, Mapping):
        return dict(application)
    raise MatchingInputError("application must be a record or a mapping")

def _validate(app: Mapping[str, Any]) -> None:
    problems = []
    for k in REQUIRED_NUMERIC:
        v = app.get(k)
        if isinstance(v, bool) or not isinstance(v, (int, float)) or math.isnan(v) or math.isinf(v):
            problems.append(f"{k} must be a number (got {v!r})")
    for k in REQUIRED_TEXT:
        v = app.get(k)
        if not isinstance(v, str) or not v.strip():
            problems.append(f"{k} is required")
    if problems:
        raise MatchingInputError("; ".join(problems))

def _as_lender(c: Any) -> Lender:
    if isinstance(c, Lender):
        return c
    if isinstance(c, Mapping):
        crit = c.get("criteria")
        if not isinstance(crit, LenderCriteria):
            crit = LenderCriteria.from_row(crit if isinstance(crit, Mapping) else None)
        return Lender(id=c.get("id"), name=c.get("name") or "", email=c.get("email"),
                      owner_id=c.get("user_id") or c.get("owner_id"), criteria=crit)
    raise MatchingInputError(f"unsupported lender entry: {type(c).__name__}")

# ---------------------------
# 4) Scoring
# ---------------------------
def _bound_check(label: str, actual: float, lo: Optional[float], hi: Optional[float], fmt) -> Tuple[bool, str]:
    if lo is not None and hi is not None:
        ok = lo <= actual <= hi
        word = "is within" if ok else "is outside"
        return ok, f"{label} ({fmt(actual)}) {word} range ({fmt(lo)}-{fmt(hi)})"
    if lo is not None:
        ok = actual >= lo
        return ok, f"{label} ({fmt(actual)}) {'meets' if ok else 'below'} minimum ({fmt(lo)})"
    ok = actual <= hi
    return ok, f"{label} ({fmt(actual)}) {'within' if ok else 'exceeds'} maximum ({fmt(hi)})"

def _months(v: float) -> str:
    return f"{int(v)} months"

def _evaluate_one(app: Mapping[str, Any], c: LenderCriteria) -> Tuple[int, int, List[str], List[str]]:
    total, satisfied = 0, 0
    ok_reasons: List[str] = []
    bad_reasons: List[str] = []

    def record(ok: bool, reason: str):
        nonlocal total, satisfied
        total += 1
        if ok:
            satisfied += 1
            ok_reasons.append(reason)
        else:
            bad_reasons.append(reason)

    if c.min_credit_score is not None or c.max_credit_score is not None:
        record(*_bound_check("Credit score", app["credit_score"], c.min_credit_score, c.max_credit_score, _num))

    if c.min_monthly_revenue is not None or c.max_monthly_revenue is not None:
        record(*_bound_check("Monthly revenue", app["avg_monthly_revenue"],
                             c.min_monthly_revenue, c.max_monthly_revenue, _money))

    if c.min_daily_balance is not None or c.max_daily_balance is not None:
        record(*_bound_check("Average daily balance", app["avg_daily_balance"],
                             c.min_daily_balance, c.max_daily_balance, _money))

    # funding is only judged against a complete range
    if c.min_funding_amount is not None and c.max_funding_amount is not None:
        record(*_bound_check("Funding request", app["funding_requested"],
                             c.min_funding_amount, c.max_funding_amount, _money))

    if c.min_time_in_business is not None or c.max_time_in_business is not None:
        record(*_bound_check("Time in business", app["time_in_business"],
                             c.min_time_in_business, c.max_time_in_business, _months))

    if c.accepts_existing_loans is not None:
        has_loans = bool(app.get("has_existing_loans"))
        if not has_loans:
            record(True, "No existing loans")
        elif c.accepts_existing_loans:
            record(True, "Lender accepts businesses with existing loans")
        else:
            record(False, "Lender does not accept businesses with existing loans")

    if c.accepts_prior_defaults is not None:
        has_defaults = bool(app.get("has_prior_defaults"))
        if not has_defaults:
            record(True, "No prior defaults")
        elif c.accepts_prior_defaults:
            record(True, "Lender accepts businesses with prior defaults")
        else:
            record(False, "Lender does not accept businesses with prior defaults")

    if c.max_negative_days is not None:
        neg = int(app.get("negative_days") or 0)
        ok = neg <= c.max_negative_days
        record(ok, f"Negative days ({neg}) {'within' if ok else 'exceed'} maximum ({c.max_negative_days})")

    if c.min_position is not None or c.max_position is not None:
        count = int(app.get("existing_mca_count") or 0)
        if count == 0 and app.get("has_existing_loans"):
            count = 1
        position = count + 1
        lo = c.min_position if c.min_position is not None else 1
        ok = position >= lo and (c.max_position is None or position <= c.max_position)
        hi = str(c.max_position) if c.max_position is not None else "any"
        record(ok, f"Position {position} is {'within' if ok else 'outside'} accepted range ({lo}-{hi})")

    if c.excluded_states is not None:
        st = _norm_state(app["state"])
        ok = state_accepted(st, c.excluded_states)
        record(ok, f"Business state ({st}) is {'supported' if ok else 'not supported'}")

    if c.excluded_industries is not None:
        ind = str(app["industry"]).strip()
        ok = industry_accepted(ind, c.excluded_industries)
        record(ok, f"Industry ({ind}) is {'supported' if ok else 'not supported'}")

    return total, satisfied, ok_reasons, bad_reasons

def score_lender(application: Any, lender: Any) -> MatchResult:
    app = _as_dict(application)
    _validate(app)
    lender = _as_lender(lender)
    total, satisfied, ok_reasons, bad_reasons = _evaluate_one(app, lender.criteria)
    score = int(round(100.0 * satisfied / total)) if total > 0 else 0
    return MatchResult(lender.id, score, ok_reasons, bad_reasons, lender_name=lender.name or None)

# ---------------------------
# 5) Public API
# ---------------------------
def match(application: Any, candidate_lenders: Sequence[Any]) -> List[MatchResult]:
    """Score every candidate; descending score, ties in input order."""
    app = _as_dict(application)
    _validate(app)
    lenders = [_as_lender(c) for c in candidate_lenders or []]
    results = [score_lender(app, lender) for lender in lenders]
    return sorted(results, key=lambda r: -r.match_score)

def match_for_user(store: Any, application: Any, user_id: Optional[str], is_admin: bool = False) -> List[MatchResult]:
    """Admins see every lender; anyone else only the lenders they own."""
    app = _as_dict(application)
    _validate(app)
    if not is_admin and not user_id:
        log.warning("match requested without a user; no lenders visible")
        return []
    lenders = store.list_lenders(None if is_admin else user_id)
    return match(app, lenders)

def load_lenders_csv(text: str) -> List[Lender]:
    """Bulk lender sheet -> Lender list (ids are the 1-based row numbers)."""
    reader = csv.DictReader(io.StringIO(text or ""))
    out: List[Lender] = []
    for i, raw in enumerate(reader, start=1):
        row = {(k or "").strip().lower(): (v or "").strip() for k, v in raw.items() if k is not None}
        name = next((row[a] for a in LENDER_NAME_ALIASES if row.get(a)), "")
        if not name:
            log.warning("lender csv row %d has no name; skipped", i)
            continue
        email = next((row[a] for a in LENDER_EMAIL_ALIASES if row.get(a)), None)
        out.append(Lender(id=i, name=name, email=email, criteria=LenderCriteria.from_row(row)))
    return out
