"""Pytest fixtures for testing"""

from datetime import date, timedelta
from typing import Any, Dict, List, Optional

import pytest

from lenders_rules import Lender, LenderCriteria
from reconcile import ApplicationRecord
from storage import StorageRateLimited


class MemoryStore:
    """Stand-in for SupabaseStore with the same call surface."""

    def __init__(self, columns: Optional[List[str]] = None, lenders: Optional[List[Lender]] = None):
        self.columns = columns
        self.lenders = list(lenders or [])
        self.inserted: List[Dict[str, Any]] = []
        self.rate_limited = False

    def table_columns(self, table: str) -> List[str]:
        if self.columns is not None:
            return list(self.columns)
        from storage import KNOWN_COLUMNS
        return list(KNOWN_COLUMNS[table])

    def insert_application(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.rate_limited:
            raise StorageRateLimited("insert application: rate limited after 3 attempt(s)")
        row = dict(payload, id=len(self.inserted) + 1)
        self.inserted.append(row)
        return row

    def list_lenders(self, owner_id: Optional[str] = None) -> List[Lender]:
        if self.rate_limited:
            raise StorageRateLimited("list lenders: rate limited after 3 attempt(s)")
        if owner_id is None:
            return list(self.lenders)
        return [l for l in self.lenders if l.owner_id == owner_id]


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore(lenders=[
        Lender(id="l-1", name="Prime Capital", owner_id="user-a",
               criteria=LenderCriteria(min_credit_score=600, min_monthly_revenue=15000)),
        Lender(id="l-2", name="Strict Funding", owner_id="user-b",
               criteria=LenderCriteria(min_credit_score=750)),
    ])


@pytest.fixture
def application_record() -> ApplicationRecord:
    return ApplicationRecord(
        business_name="Acme Corp",
        credit_score=700,
        state="CA",
        industry="Retail",
        time_in_business=38,
        avg_daily_balance=8500.0,
        avg_monthly_revenue=20000.0,
        funding_requested=50000.0,
        funding_purpose="Inventory",
        owner_name="Jordan Smith",
    )


@pytest.fixture
def application_text() -> str:
    return "\n".join([
        "MERCHANT CASH ADVANCE APPLICATION",
        "Business Name: Acme Corp",
        "Owner Name: Jordan Smith",
        "Credit Score: 700",
        "State: California",
        "Industry: Retail",
        "Time in Business: 3 years",
        "Funding Requested: $50,000",
        "Use of Funds: Inventory",
        "Existing Loans: No",
    ])


def build_csv(rows: List[List[Any]], header: Optional[List[str]] = None) -> bytes:
    header = header or ["Date", "Amount", "Description"]
    lines = [",".join(header)]
    for r in rows:
        lines.append(",".join(str(c) for c in r))
    return ("\n".join(lines) + "\n").encode("utf-8")


def three_month_csv() -> bytes:
    """Two $10,000 deposits and one $500 debit per month, Jan-Mar 2025."""
    rows: List[List[Any]] = []
    for month in (1, 2, 3):
        rows.append([f"2025-{month:02d}-05", "10000.00", "Mobile Deposit"])
        rows.append([f"2025-{month:02d}-20", "10000.00", "Card Settlement"])
        rows.append([f"2025-{month:02d}-22", "-500.00", "Utility Payment"])
    return build_csv(rows)


def daily_balance_csv(days: int, start: date = date(2025, 1, 1)) -> bytes:
    rows = []
    for i in range(days):
        d = start + timedelta(days=i)
        # last 30 days at 100, anything earlier at 0
        rows.append([d.isoformat(), "50.00", "Deposit", "0.00" if i < days - 30 else "100.00"])
    return build_csv(rows, ["Date", "Amount", "Description", "Balance"])


@pytest.fixture
def csv_builder():
    return build_csv
