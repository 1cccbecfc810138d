# -*- coding: utf-8 -*-
"""Plain-text submission drafts for a matched lender. Transport is the caller's job."""

from __future__ import annotations

from typing import Any, Iterable, Optional, Tuple

from lenders_rules import MatchResult
from reconcile import ApplicationRecord, ExtractionProvenance, ensure_submittable

SUBJECT_PREFIX = "New Submission"


def _money(v: Optional[float]) -> str:
    return f"${(v or 0):,.0f}"

def format_time_in_business(months: Optional[int]) -> str:
    months = int(months or 0)
    years, rem = divmod(months, 12)
    y = f"{years} year{'s' if years != 1 else ''}"
    m = f"{rem} month{'s' if rem != 1 else ''}"
    return f"{y}, {m}"

def default_subject(business_name: Optional[str], broker_name: Optional[str] = None) -> str:
    biz = (business_name or "").strip() or "Unknown Business"
    if broker_name and broker_name.strip():
        return f"{SUBJECT_PREFIX} - {broker_name.strip()} - {biz}"
    return f"{SUBJECT_PREFIX} - {biz}"

def build_submission_email(
    lender_name: str,
    match: Any,
    record: ApplicationRecord,
    attachment_names: Iterable[str],
    broker_name: Optional[str] = None,
    provenance: Optional[ExtractionProvenance] = None,
) -> Tuple[str, str]:
    ensure_submittable(provenance)
    if not isinstance(match, MatchResult):
        match = MatchResult.from_dict(match or {})

    lines = [
        f"Hello {lender_name or 'team'},",
        "",
        f"Please review the following submission for {record.business_name}.",
        "",
        "Business summary",
        f"- Business: {record.business_name}",
    ]
    if record.owner_name:
        lines.append(f"- Owner: {record.owner_name}")
    lines += [
        f"- State: {record.state}",
        f"- Industry: {record.industry}",
        f"- Time in business: {format_time_in_business(record.time_in_business)}",
        f"- Credit score: {record.credit_score}",
        f"- Average monthly revenue: {_money(record.avg_monthly_revenue)}",
        f"- Average daily balance: {_money(record.avg_daily_balance)}",
        f"- Funding requested: {_money(record.funding_requested)}",
    ]
    if record.funding_purpose:
        lines.append(f"- Use of funds: {record.funding_purpose}")

    lines += ["", f"Match score: {match.match_score}%"]
    if match.match_reasons:
        lines.append("Why this fits:")
        lines += [f"  * {r}" for r in match.match_reasons]

    names = [n for n in (attachment_names or []) if n]
    if names:
        lines += ["", "Attached documents:"]
        lines += [f"  - {n}" for n in names]

    lines += ["", "Thank you,", broker_name or ""]
    return default_subject(record.business_name, broker_name), "\n".join(lines).rstrip() + "\n"
