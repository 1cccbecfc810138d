# -*- coding: utf-8 -*-
"""
Supabase-backed storage for applications and lenders.

Tables:
  applications      one row per confirmed ApplicationRecord (+ user_id, created_at)
  lenders           id, name, email, user_id, created_at
  lender_criteria   lender_id + the LenderCriteria columns

Every call goes through call_with_retries; a rate limit that outlives the retries is
raised as StorageRateLimited so callers can surface it distinctly.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from supabase import Client, create_client

import config
from lenders_rules import Lender, LenderCriteria
from reconcile import RECORD_FIELDS
from resilient import RetriesExhausted, call_with_retries, is_rate_limited

log = logging.getLogger("storage")

# used when the applications table is empty and its columns cannot be probed
KNOWN_COLUMNS: Dict[str, Sequence[str]] = {
    "applications": tuple(RECORD_FIELDS) + ("id", "user_id", "created_at"),
}


class StorageRateLimited(RuntimeError):
    """The store kept answering 429 after every retry."""


class SupabaseStore:
    def __init__(self, client: Client, max_retries: int = config.REMOTE_MAX_RETRIES,
                 backoff_base: float = config.REMOTE_BACKOFF_BASE, sleep: Callable[[float], None] = time.sleep):
        self.sb = client
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.sleep = sleep
        self._columns: Dict[str, List[str]] = {}

    @classmethod
    def from_env(cls) -> "SupabaseStore":
        if not config.SUPABASE_URL or not config.SUPABASE_SERVICE_ROLE:
            raise RuntimeError("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE in environment.")
        return cls(create_client(config.SUPABASE_URL, config.SUPABASE_SERVICE_ROLE))

    def _run(self, label: str, fn: Callable[[], Any]) -> Any:
        try:
            return call_with_retries(fn, max_retries=self.max_retries, base_delay=self.backoff_base,
                                     sleep=self.sleep, label=label)
        except RetriesExhausted as e:
            if is_rate_limited(e.last_error):
                raise StorageRateLimited(f"{label}: rate limited after {e.attempts} attempt(s)") from e
            raise

    # ---------------- Applications ----------------
    def table_columns(self, table: str) -> List[str]:
        if table in self._columns:
            return self._columns[table]
        rows = self._run(f"columns {table}",
                         lambda: self.sb.table(table).select("*").limit(1).execute().data) or []
        if rows:
            cols = list(rows[0].keys())
        else:
            cols = list(KNOWN_COLUMNS.get(table, ()))
            log.info("%s is empty; assuming known columns", table)
        self._columns[table] = cols
        return cols

    def insert_application(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        res = self._run("insert application",
                        lambda: self.sb.table("applications").insert(payload).execute())
        rows = res.data or []
        if not rows:
            raise RuntimeError("Failed to insert application (no row returned)")
        return rows[0]

    # ---------------- Lenders ----------------
    @staticmethod
    def _lender_from_row(row: Dict[str, Any]) -> Lender:
        crit = row.get("lender_criteria")
        if isinstance(crit, list):
            crit = crit[0] if crit else None
        return Lender(id=row.get("id"), name=row.get("name") or "", email=row.get("email"),
                      owner_id=row.get("user_id"), criteria=LenderCriteria.from_row(crit))

    def list_lenders(self, owner_id: Optional[str] = None) -> List[Lender]:
        """All lenders (owner_id None) or only those one user owns."""
        def q():
            query = self.sb.table("lenders").select("*, lender_criteria(*)")
            if owner_id is not None:
                query = query.eq("user_id", owner_id)
            return query.order("created_at").execute().data

        return [self._lender_from_row(r) for r in (self._run("list lenders", q) or [])]

    def get_lender_criteria(self, lender_id: Any) -> Optional[LenderCriteria]:
        rows = self._run("get criteria", lambda: self.sb.table("lender_criteria").select("*")
                         .eq("lender_id", lender_id).limit(1).execute().data) or []
        return LenderCriteria.from_row(rows[0]) if rows else None

    def create_lender(self, name: str, owner_id: Optional[str], criteria: LenderCriteria,
                      email: Optional[str] = None) -> Lender:
        payload = {"name": name, "email": email, "user_id": owner_id,
                   "created_at": datetime.now(timezone.utc).isoformat()}
        rows = self._run("create lender", lambda: self.sb.table("lenders").insert(payload).execute().data) or []
        if not rows:
            raise RuntimeError("Failed to insert lender (no row returned)")
        lender_id = rows[0]["id"]
        crit_row = {"lender_id": lender_id, **criteria.to_row()}
        self._run("create criteria", lambda: self.sb.table("lender_criteria").insert(crit_row).execute())
        return Lender(id=lender_id, name=name, email=email, owner_id=owner_id, criteria=criteria)

    def update_lender(self, lender_id: Any, criteria: LenderCriteria, name: Optional[str] = None) -> None:
        if name:
            self._run("rename lender", lambda: self.sb.table("lenders").update({"name": name})
                      .eq("id", lender_id).execute())
        self._run("update criteria", lambda: self.sb.table("lender_criteria").update(criteria.to_row())
                  .eq("lender_id", lender_id).execute())

    def delete_lender(self, lender_id: Any) -> None:
        self._run("delete criteria", lambda: self.sb.table("lender_criteria").delete()
                  .eq("lender_id", lender_id).execute())
        self._run("delete lender", lambda: self.sb.table("lenders").delete().eq("id", lender_id).execute())
