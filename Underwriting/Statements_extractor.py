#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Bank statement analyzer (extracted documents -> financial profile)

Per document (collect_statement):
- pick a pattern set from BANK_PATTERNS by sniffing filename + header text
- tabular input (CSV / spreadsheet): map columns by header synonyms, read every row
- text input (PDF / OCR / plain text):
    1. position-clustered table lines
    2. line-level "date description amount [balance]" regex when (1) gave < 10 rows
    3. bank deposit/withdrawal regexes with a date looked up just before the match
- accumulate dated balances (last value per day wins), transactions and
  per-month (YYYY-MM) deposit totals

Across documents (summarize_statements):
- merge in file-name order, then derive average daily balance, monthly revenue,
  NSF count, negative days, MCA lenders, deposit consistency, first-position need
- nothing usable at all: median/mean of every dollar amount in the text as a synthetic
  profile (status "degraded"), or a failed result filled with FAILURE_DEFAULTS

summarize_statements never raises.
"""

import logging
import math
import re
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from statistics import fmean, median, pstdev
from typing import Any, Dict, Iterable, List, Optional, Pattern, Sequence, Tuple

from dateutil import parser as dateparser
from rapidfuzz import fuzz

from Document_reader import ExtractedDocument

log = logging.getLogger("statements")

# ---------------- Config ----------------
DATE_PAT = r"(?:\b\d{1,2}[/-]\d{1,2}\b)"             # 4/3 or 04-03
DATE_Y_PAT = r"(?:\b\d{1,2}[/-]\d{1,2}[/-]\d{2,4}\b)" # 04/03/2025
DATE_ISO_PAT = r"(?:\b\d{4}-\d{1,2}-\d{1,2}\b)"
MONEY_PAT = r"\(?[-+]?\$?\s?(?:\d{1,3}(?:,\d{3})+|\d+)\.\d{2}\)?-?"

DATE_ANY_RE = re.compile(f"{DATE_ISO_PAT}|{DATE_Y_PAT}|{DATE_PAT}")
LINE_TXN_RE = re.compile(
    rf"^\s*(?P<date>{DATE_ISO_PAT}|{DATE_Y_PAT}|{DATE_PAT})\s+(?P<desc>.+?)\s+(?P<amount>{MONEY_PAT})"
    rf"(?:\s+(?P<balance>{MONEY_PAT}))?\s*(?P<flag>CR|DR)?\s*$",
    re.I,
)
OPENING_BALANCE_RE = re.compile(rf"(?:beginning|starting|opening|previous)\s+balance(?:\s+on\s+\S+)?\s*[:\-]?\s*(?P<amount>{MONEY_PAT})", re.I)
ENDING_BALANCE_RE = re.compile(rf"(?:ending|closing|new)\s+balance(?:\s+on\s+\S+)?\s*[:\-]?\s*(?P<amount>{MONEY_PAT})", re.I)
DOLLAR_TOKEN_RE = re.compile(r"\$\s?\d{1,3}(?:,\d{3})*(?:\.\d{2})?|\b\d{1,3}(?:,\d{3})+\.\d{2}\b|\b\d+\.\d{2}\b")

MIN_TABLE_TRANSACTIONS = 10
DATE_WINDOW = 60            # chars searched before a keyword match for its date
ADB_WINDOW_DAYS = 30
SYNTHETIC_MIN_AMOUNTS = 1   # dollar tokens needed before the synthetic estimate is used

NSF_KEYWORDS = ("nsf", "non-sufficient", "insufficient", "overdraft", "returned item", "return item", "od fee")
# whole words only: "transfer" contains "nsf", "food fee" contains "od fee"
NSF_RE = re.compile(r"(?<![a-z])(?:" + "|".join(re.escape(k) for k in NSF_KEYWORDS) + r")s?(?![a-z])")
MCA_LENDER_PATTERNS = (
    "ondeck", "on deck", "bluevine", "rapid finance", "fundbox", "kapitus", "cana capital",
    "credibly", "paypal working capital", "square capital", "square loan", "shopify capital",
    "libertas", "yellowstone", "forward financing", "national funding", "fora financial",
    "everest business", "reliant funding", "pearl capital", "mulligan", "clearco",
)
REFINANCE_KEYWORDS = ("refinanc", "consolidat", "buyout", "buy out", "payoff", "pay off")
CREDIT_WORDS = ("credit", "deposit", "cr", "addition", "incoming")
DEBIT_WORDS = ("debit", "withdrawal", "dr", "payment", "check", "fee", "purchase", "outgoing")
DEBIT_DESC_WORDS = ("withdrawal", "purchase", "payment", "debit", "fee", "check", "pos ", "atm", "transfer to")
CREDIT_DESC_WORDS = ("deposit", "credit", "transfer from", "received", "refund", "payroll in")

COLUMN_SYNONYMS: Dict[str, List[str]] = {
    "date": ["date", "transaction date", "posting date", "post date", "posted date", "trans date", "effective date", "value date"],
    "amount": ["amount", "transaction amount", "amt", "net amount"],
    "description": ["description", "desc", "memo", "details", "transaction description", "payee", "narrative", "name"],
    "balance": ["balance", "running balance", "ending balance", "available balance", "ledger balance", "daily balance"],
    "type": ["type", "transaction type", "trans type", "dr/cr", "cr/dr", "debit/credit", "credit/debit"],
    "credit": ["credit", "credits", "deposit", "deposits", "credit amount", "money in", "deposits/credits"],
    "debit": ["debit", "debits", "withdrawal", "withdrawals", "debit amount", "money out", "withdrawals/debits"],
}
COLUMN_FUZZY_CUTOFF = 85

# ---------------- Bank pattern sets ----------------
@dataclass(frozen=True)
class BankPatternSet:
    name: str
    keywords: Tuple[str, ...]
    balance_re: Pattern
    period_re: Pattern
    deposit_re: Pattern
    withdrawal_re: Pattern
    nsf_re: Pattern
    deposit_sections: Tuple[str, ...] = ()
    withdrawal_sections: Tuple[str, ...] = ()

_AMT = r"(?P<amount>\(?-?\$?\s?(?:\d{1,3}(?:,\d{3})+|\d+)\.\d{2}\)?)"
_DAY = r"(?P<date>\d{1,2}/\d{1,2}(?:/\d{2,4})?)"
_WORDED = r"[A-Za-z]{3,9}\.?\s+\d{1,2},?\s+\d{2,4}"
_NUMERIC = r"\d{1,2}/\d{1,2}/\d{2,4}"

GENERIC_DEPOSIT_SECTIONS = ("deposits and credits", "deposits and other credits", "deposits and additions",
                            "deposits/credits", "credits")
GENERIC_WITHDRAWAL_SECTIONS = ("withdrawals and debits", "withdrawals and other debits", "withdrawals/debits",
                               "checks paid", "electronic withdrawals", "other withdrawals", "debits", "fees")

BANK_PATTERNS: Dict[str, BankPatternSet] = {
    "chase": BankPatternSet(
        name="chase",
        keywords=("chase", "jpmorgan"),
        balance_re=re.compile(rf"^\s*{_DAY}\s+{_AMT}\s*$", re.M),
        period_re=re.compile(rf"(?P<start>{_WORDED})\s*(?:through|to)\s*(?P<end>{_WORDED})", re.I),
        deposit_re=re.compile(rf"\b(?:deposit|orig co name|online transfer from|zelle payment from|credit)\b[^\n$]{{0,60}}?\$?{_AMT}", re.I),
        withdrawal_re=re.compile(rf"\b(?:card purchase|online transfer to|zelle payment to|withdrawal|orig co name)\b[^\n$]{{0,60}}?\$?{_AMT}", re.I),
        nsf_re=re.compile(r"\b(?:insufficient funds fee|overdraft fee|returned item fee|nsf)\b", re.I),
        deposit_sections=("deposits and additions",),
        withdrawal_sections=("checks paid", "atm & debit card withdrawals", "electronic withdrawals",
                             "other withdrawals", "fees"),
    ),
    "wells_fargo": BankPatternSet(
        name="wells_fargo",
        keywords=("wells fargo", "wellsfargo", "wells_fargo"),
        balance_re=re.compile(rf"ending\s+(?:daily\s+)?balance\s+on\s+{_DAY}\s*\$?{_AMT}", re.I),
        period_re=re.compile(rf"(?:statement\s+period|for)\s*(?P<start>{_NUMERIC}|{_WORDED})\s*(?:-|to|through)\s*(?P<end>{_NUMERIC}|{_WORDED})", re.I),
        deposit_re=re.compile(rf"\b(?:deposit|edeposit|online transfer from|credit)\b[^\n$]{{0,60}}?\$?{_AMT}", re.I),
        withdrawal_re=re.compile(rf"\b(?:purchase authorized|online transfer to|withdrawal|bill pay|debit)\b[^\n$]{{0,60}}?\$?{_AMT}", re.I),
        nsf_re=re.compile(r"\b(?:nsf|overdraft fee|returned item|non-sufficient)\b", re.I),
        deposit_sections=("deposits/credits", "deposits/additions"),
        withdrawal_sections=("withdrawals/debits", "withdrawals/subtractions"),
    ),
    "bank_of_america": BankPatternSet(
        name="bank_of_america",
        keywords=("bank of america", "bankofamerica", "bank_of_america"),
        balance_re=re.compile(rf"^\s*{_DAY}\s+{_AMT}\s*$", re.M),
        period_re=re.compile(rf"for\s+(?P<start>{_WORDED})\s*(?:to|through|-)\s*(?P<end>{_WORDED})", re.I),
        deposit_re=re.compile(rf"\b(?:deposit|counter credit|online banking transfer from|credit)\b[^\n$]{{0,60}}?\$?{_AMT}", re.I),
        withdrawal_re=re.compile(rf"\b(?:checkcard|online banking transfer to|withdrawal|purchase|bill pay)\b[^\n$]{{0,60}}?\$?{_AMT}", re.I),
        nsf_re=re.compile(r"\b(?:nsf|overdraft item fee|returned item|insufficient)\b", re.I),
        deposit_sections=("deposits and other credits", "deposits and other additions"),
        withdrawal_sections=("withdrawals and other debits", "withdrawals and other subtractions", "checks", "service fees"),
    ),
    "generic": BankPatternSet(
        name="generic",
        keywords=(),
        balance_re=re.compile(rf"^\s*{_DAY}\s+(?:balance\s+)?{_AMT}\s*$", re.M | re.I),
        period_re=re.compile(rf"(?:statement\s+(?:period|cycle)|for\s+the\s+period|period\s+covered)[^\n]{{0,30}}?(?P<start>{_NUMERIC}|{_WORDED})\s*(?:to|through|-)\s*(?P<end>{_NUMERIC}|{_WORDED})", re.I),
        deposit_re=re.compile(rf"\b(?:deposit|credit|transfer from|ach credit|mobile deposit)\b[^\n$]{{0,60}}?\$?{_AMT}", re.I),
        withdrawal_re=re.compile(rf"\b(?:withdrawal|debit|purchase|payment to|transfer to|check\s*#?\s*\d+)\b[^\n$]{{0,60}}?\$?{_AMT}", re.I),
        nsf_re=re.compile(r"\b(?:nsf|non-sufficient|insufficient\s+funds|overdraft|returned\s+item)\b", re.I),
    ),
}

# ---------------- Models ----------------
@dataclass
class Transaction:
    date: date
    description: str    # lower-cased
    amount: float       # magnitude
    type: str           # "credit" | "debit"

@dataclass
class StatementData:
    """What one document yielded. Owned by a single worker until merged."""
    file_name: Optional[str] = None
    bank: str = "generic"
    text: str = ""
    transactions: List[Transaction] = field(default_factory=list)
    balances: Dict[date, float] = field(default_factory=dict)
    monthly_deposits: Dict[str, float] = field(default_factory=dict)
    opening_balance: Optional[float] = None
    ending_balance: Optional[float] = None
    nsf_count: int = 0
    error: Optional[str] = None

    def add(self, txn: Transaction) -> None:
        self.transactions.append(txn)
        if txn.type == "credit":
            k = month_key(txn.date)
            self.monthly_deposits[k] = self.monthly_deposits.get(k, 0.0) + txn.amount

    def reset(self) -> None:
        self.transactions = []
        self.balances = {}
        self.monthly_deposits = {}

FAILURE_DEFAULTS: Dict[str, Any] = {
    "avg_daily_balance": 0.0,
    "avg_monthly_revenue": 0.0,
    "nsf_count": 0,
    "negative_days": 0,
    "existing_mca_count": 0,
    "recent_funding_detected": False,
    "deposit_consistency": 0.0,
    "total_deposits": 0.0,
    "ending_balance": 0.0,
    "largest_deposit": 0.0,
    "needs_first_position": False,
    "transaction_count": 0,
}

@dataclass
class BankAnalysisResult:
    avg_daily_balance: float = 0.0
    avg_monthly_revenue: float = 0.0
    nsf_count: int = 0
    negative_days: int = 0
    existing_mca_count: int = 0
    recent_funding_detected: bool = False
    mca_lenders: List[str] = field(default_factory=list)
    deposit_consistency: float = 0.0
    total_deposits: float = 0.0
    ending_balance: float = 0.0
    largest_deposit: float = 0.0
    monthly_deposits: List[Dict[str, Any]] = field(default_factory=list)
    daily_balances: List[Dict[str, Any]] = field(default_factory=list)
    needs_first_position: bool = False
    bank_names: List[str] = field(default_factory=list)
    transaction_count: int = 0
    analysis_success: bool = False
    status: str = "failed"          # measured | degraded | failed
    degraded: bool = False
    error_message: Optional[str] = None

    @property
    def nsf_days(self) -> int:
        return self.nsf_count

    @classmethod
    def failed(cls, message: str) -> "BankAnalysisResult":
        return cls(analysis_success=False, status="failed", error_message=message, **FAILURE_DEFAULTS)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

# ---------------- Small parsers ----------------
def month_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"

def _safe_date(y: int, m: int, d: int) -> Optional[date]:
    try:
        return date(y, m, d)
    except ValueError:
        return None

def parse_date(raw: Any, default_year: Optional[int] = None) -> Optional[date]:
    """MM/DD/YYYY, MM-DD-YYYY, YYYY-MM-DD, DD/MM/YYYY (first part > 12), MM/DD; 2-digit years -> 20xx."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, int) and 19000101 <= raw <= 21001231:
        raw = str(raw)
    if isinstance(raw, float):
        return None
    s = str(raw).strip()
    if not s:
        return None

    m = re.match(r"^(\d{4})-(\d{1,2})-(\d{1,2})\b", s)
    if m:
        return _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    m = re.match(r"^(\d{4})(\d{2})(\d{2})$", s)
    if m:
        return _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    m = re.match(r"^(\d{1,2})[/\-](\d{1,2})(?:[/\-](\d{2,4}))?\b", s)
    if m:
        a, b = int(m.group(1)), int(m.group(2))
        if m.group(3):
            y = int(m.group(3))
            if y < 100:
                y += 2000
        else:
            y = default_year or date.today().year
        if a > 12 and b <= 12:
            return _safe_date(y, b, a)
        return _safe_date(y, a, b)
    try:
        return dateparser.parse(s, default=datetime(default_year or date.today().year, 1, 1)).date()
    except (ValueError, OverflowError):
        return None

def parse_amount(raw: Any) -> Optional[float]:
    """'$1,200.50' -> 1200.5, '(45.00)' / '-45.00' / '45.00-' -> -45.0, junk -> None."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return None if isinstance(raw, float) and math.isnan(raw) else float(raw)
    s = str(raw).strip()
    if not s:
        return None
    negative = False
    if s.startswith("(") and s.endswith(")"):
        negative, s = True, s[1:-1]
    s = s.replace("$", "").replace(",", "").replace(" ", "")
    if s.endswith("-"):
        negative, s = True, s[:-1]
    if s.startswith("-"):
        negative, s = True, s[1:]
    elif s.startswith("+"):
        s = s[1:]
    try:
        v = float(s)
    except ValueError:
        return None
    return -v if negative else v

def _normalize_desc(desc: str) -> str:
    s = desc.lower()
    s = re.sub(r"\b\d{4,}\b", "", s)
    s = re.sub(r"[-/#*]+", " ", s)
    return " ".join(s.split())

def _mca_name(desc: str) -> Optional[str]:
    low = desc.lower()
    for name in MCA_LENDER_PATTERNS:
        if name in low:
            return name
    return None

def _is_nsf(desc: str, pset: Optional[BankPatternSet] = None) -> bool:
    low = desc.lower()
    if NSF_RE.search(low):
        return True
    return bool(pset and pset.nsf_re.search(desc))

def _type_from_keyword(raw: Any) -> Optional[str]:
    words = re.findall(r"[a-z]+", str(raw or "").lower())
    if any(w.startswith(c) for w in words for c in CREDIT_WORDS):
        return "credit"
    if any(w.startswith(d) for w in words for d in DEBIT_WORDS):
        return "debit"
    return None

def _type_from_description(desc: str) -> Optional[str]:
    low = desc.lower()
    if any(k in low for k in DEBIT_DESC_WORDS):
        return "debit"
    if any(k in low for k in CREDIT_DESC_WORDS):
        return "credit"
    return None

# ---------------- Bank identification ----------------
def _has_keyword(hay: str, keyword: str) -> bool:
    # letters must not touch the keyword ("purchase" is not "chase"); "chase_jan.pdf" still is
    return re.search(rf"(?<![a-z]){re.escape(keyword)}(?![a-z])", hay) is not None

def identify_bank(file_name: Optional[str], text: Optional[str]) -> BankPatternSet:
    hay = f"{file_name or ''}\n{(text or '')[:4000]}".lower()
    for name, pset in BANK_PATTERNS.items():
        if pset.keywords and any(_has_keyword(hay, k) for k in pset.keywords):
            return pset
    return BANK_PATTERNS["generic"]

def find_period(text: str, pset: BankPatternSet) -> Optional[Tuple[date, date]]:
    for rx in (pset.period_re, BANK_PATTERNS["generic"].period_re):
        for m in rx.finditer(text or ""):
            try:
                d1 = dateparser.parse(m.group("start")).date()
                d2 = dateparser.parse(m.group("end")).date()
            except (ValueError, OverflowError):
                continue
            if d1 <= d2:
                return d1, d2
    return None

# ---------------- Structured path ----------------
def _norm_header(h: Any) -> str:
    return " ".join(str(h or "").strip().lower().replace("_", " ").split())

def map_columns(headers: Sequence[Any]) -> Dict[str, Any]:
    """Role -> header. Exact synonym first, then fuzzy, then substring; one role per header."""
    norm = [(h, _norm_header(h)) for h in headers]
    out: Dict[str, Any] = {}
    claimed = set()

    def claim(role, h):
        out[role] = h
        claimed.add(h)

    for role, syns in COLUMN_SYNONYMS.items():
        for s in syns:
            hit = next((h for h, n in norm if h not in claimed and n == s), None)
            if hit is not None:
                claim(role, hit)
                break
    for role, syns in COLUMN_SYNONYMS.items():
        if role in out:
            continue
        best = None
        for h, n in norm:
            if h in claimed:
                continue
            score = max(fuzz.ratio(n, s) for s in syns)
            if score >= COLUMN_FUZZY_CUTOFF and (best is None or score > best[0]):
                best = (score, h)
        if best:
            claim(role, best[1])
    for role, syns in COLUMN_SYNONYMS.items():
        if role in out:
            continue
        for h, n in norm:
            if h not in claimed and any(s in n for s in syns if len(s) > 3):
                claim(role, h)
                break
    return out

def _collect_rows(rows: List[Dict[str, Any]], data: StatementData) -> bool:
    headers: List[Any] = []
    for row in rows[:5]:
        headers.extend(k for k in row.keys() if k not in headers)
    cols = map_columns(headers)
    if "date" not in cols or not ({"amount", "credit", "debit", "balance"} & set(cols)):
        log.warning("no usable date/amount columns in %s: %s", data.file_name, headers)
        return False

    for row in rows:
        d = parse_date(row.get(cols["date"]))
        if d is None:
            continue
        desc = str(row.get(cols["description"]) or "").strip().lower() if "description" in cols else ""

        if "balance" in cols:
            bal = parse_amount(row.get(cols["balance"]))
            if bal is not None:
                data.balances[d] = bal

        amount, kind = None, None
        if "amount" in cols:
            amount = parse_amount(row.get(cols["amount"]))
        if not amount:
            cr = parse_amount(row.get(cols["credit"])) if "credit" in cols else None
            dr = parse_amount(row.get(cols["debit"])) if "debit" in cols else None
            if cr:
                amount, kind = abs(cr), "credit"
            elif dr:
                amount, kind = abs(dr), "debit"
        if not amount:
            continue
        if kind is None and "type" in cols:
            kind = _type_from_keyword(row.get(cols["type"]))
        if kind is None:
            kind = "debit" if amount < 0 else "credit"
        data.add(Transaction(d, desc, abs(amount), kind))
    return True

# ---------------- Unstructured path ----------------
def _section_for(low_line: str, pset: BankPatternSet) -> Optional[str]:
    if any(h in low_line for h in pset.deposit_sections + GENERIC_DEPOSIT_SECTIONS):
        return "credit"
    if any(h in low_line for h in pset.withdrawal_sections + GENERIC_WITHDRAWAL_SECTIONS):
        return "debit"
    return None

def _year_for(month: int, period: Optional[Tuple[date, date]]) -> Optional[int]:
    if not period:
        return None
    d1, d2 = period
    # statement crossing new year: December rows belong to the earlier year
    if d1.year != d2.year and month > d2.month:
        return d1.year
    return d2.year

def _date_with_period(raw: str, period: Optional[Tuple[date, date]]) -> Optional[date]:
    if re.fullmatch(r"\d{1,2}[/-]\d{1,2}", raw.strip()):
        return parse_date(raw, default_year=_year_for(int(re.split(r"[/-]", raw.strip())[0]), period))
    return parse_date(raw)

def _collect_lines(lines: Iterable[str], data: StatementData, pset: BankPatternSet,
                   period: Optional[Tuple[date, date]]) -> None:
    section = None
    for ln in lines:
        ln = re.sub(r"\s{2,}", " ", ln.replace("\x00", " ")).strip()
        if not ln:
            continue
        m = LINE_TXN_RE.match(ln)
        if not m:
            sec = _section_for(ln.lower(), pset)
            if sec:
                section = sec
            continue
        d = _date_with_period(m.group("date"), period)
        amount = parse_amount(m.group("amount"))
        if d is None or not amount:
            continue
        desc = m.group("desc").strip().lower()
        flag = (m.group("flag") or "").upper()
        if flag == "DR" or amount < 0:
            kind = "debit"
        elif flag == "CR" or m.group("amount").lstrip("($ ").startswith("+"):
            kind = "credit"
        else:
            kind = section or _type_from_description(desc) or "credit"
        data.add(Transaction(d, desc, abs(amount), kind))
        if m.group("balance"):
            bal = parse_amount(m.group("balance"))
            if bal is not None:
                data.balances[d] = bal

def _collect_keyword_matches(text: str, data: StatementData, pset: BankPatternSet,
                             period: Optional[Tuple[date, date]]) -> None:
    for kind, rx in (("credit", pset.deposit_re), ("debit", pset.withdrawal_re)):
        for m in rx.finditer(text):
            before = text[max(0, m.start() - DATE_WINDOW):m.start() + 1]
            dates = list(DATE_ANY_RE.finditer(before))
            if not dates:
                continue
            d = _date_with_period(dates[-1].group(0), period)
            amount = parse_amount(m.group("amount"))
            if d is None or not amount:
                continue
            desc = re.sub(r"\s+", " ", m.group(0)[:m.start("amount") - m.start()]).strip().lower()
            data.add(Transaction(d, desc, abs(amount), kind))

def _collect_balances(text: str, data: StatementData, pset: BankPatternSet,
                      period: Optional[Tuple[date, date]]) -> None:
    for m in pset.balance_re.finditer(text):
        d = _date_with_period(m.group("date"), period)
        bal = parse_amount(m.group("amount"))
        if d is not None and bal is not None:
            data.balances.setdefault(d, bal)
    op = OPENING_BALANCE_RE.search(text)
    if op:
        data.opening_balance = parse_amount(op.group("amount"))
    endings = list(ENDING_BALANCE_RE.finditer(text))
    if endings:
        data.ending_balance = parse_amount(endings[-1].group("amount"))

def rebuild_daily_balances(txns: List[Transaction], opening_balance: float) -> Dict[date, float]:
    daily: Dict[date, float] = {}
    if not txns:
        return daily
    by_day: Dict[date, List[Transaction]] = defaultdict(list)
    for t in txns:
        by_day[t.date].append(t)
    d, end = min(by_day), max(by_day)
    bal = opening_balance
    while d <= end:
        for t in by_day.get(d, []):
            bal += t.amount if t.type == "credit" else -t.amount
        daily[d] = round(bal, 2)
        d += timedelta(days=1)
    return daily

def _collect_text(doc: ExtractedDocument, data: StatementData, pset: BankPatternSet) -> None:
    text = doc.text or ""
    period = find_period(text, pset)

    if doc.table_lines:
        _collect_lines(doc.table_lines, data, pset, period)
    if len(data.transactions) < MIN_TABLE_TRANSACTIONS:
        data.reset()
        _collect_lines(text.splitlines(), data, pset, period)
    if not data.transactions:
        _collect_keyword_matches(text, data, pset, period)
    _collect_balances(text, data, pset, period)

    if not data.balances and data.transactions and data.opening_balance is not None:
        data.balances = rebuild_daily_balances(data.transactions, data.opening_balance)

# ---------------- Per-document entry ----------------
def order_documents(docs: Sequence[Any]) -> List[Any]:
    """File-name order; documents without a name keep their declared position at the end."""
    return sorted(docs, key=lambda d: (getattr(d, "file_name", None) is None, getattr(d, "file_name", None) or ""))

def collect_statement(doc: ExtractedDocument) -> StatementData:
    text = doc.text or ""
    pset = identify_bank(doc.file_name, text)
    data = StatementData(file_name=doc.file_name, bank=pset.name, text=text)
    try:
        if not (doc.rows and _collect_rows(doc.rows, data)):
            _collect_text(doc, data, pset)
        data.nsf_count = sum(1 for t in data.transactions if t.type == "debit" and _is_nsf(t.description, pset))
    except Exception as e:
        log.exception("failed to read statement %s", doc.file_name)
        data.reset()
        data.error = str(e)
    return data

# ---------------- Metrics ----------------
def average_daily_balance(balances: Dict[date, float]) -> float:
    dated = sorted(balances.items())
    if len(dated) >= ADB_WINDOW_DAYS:
        dated = dated[-ADB_WINDOW_DAYS:]
    if not dated:
        return 0.0
    return round(fmean(v for _, v in dated), 2)

def average_monthly_revenue(monthly: Dict[str, float], txns: List[Transaction]) -> float:
    if monthly:
        return round(sum(monthly.values()) / len(monthly), 2)
    credits = [t for t in txns if t.type == "credit"]
    if not credits:
        return 0.0
    span_days = (max(t.date for t in credits) - min(t.date for t in credits)).days
    months = max(1.0, span_days / 30.0)
    return round(sum(t.amount for t in credits) / months, 2)

def deposit_consistency(monthly: Dict[str, float]) -> float:
    vals = [monthly[k] for k in sorted(monthly)]
    if len(vals) < 2:
        return 100.0
    mean = fmean(vals)
    if mean <= 0:
        return 0.0
    return round(max(0.0, min(100.0, 100.0 * (1.0 - pstdev(vals) / mean))), 2)

def _synthetic_profile(parts: List[StatementData]) -> Optional[Tuple[Dict[date, float], List[Transaction], Dict[str, float], int]]:
    amounts: List[float] = []
    for p in parts:
        for tok in DOLLAR_TOKEN_RE.findall(p.text or ""):
            v = parse_amount(tok)
            if v:
                amounts.append(abs(v))
    if len(amounts) < SYNTHETIC_MIN_AMOUNTS:
        return None
    when = date.today()
    deposit = round(2 * fmean(amounts), 2)
    balances = {when: round(median(amounts), 2)}
    txns = [Transaction(when, "synthetic estimate", deposit, "credit")]
    return balances, txns, {month_key(when): deposit}, len(amounts)

def summarize_statements(parts: Sequence[StatementData]) -> BankAnalysisResult:
    """Merge per-document data (already in deterministic order) and derive the profile."""
    try:
        parts = list(parts)
        balances: Dict[date, float] = {}
        txns: List[Transaction] = []
        monthly: Dict[str, float] = defaultdict(float)
        nsf_count = 0
        ending: Optional[float] = None
        for p in parts:
            balances.update(p.balances)
            txns.extend(p.transactions)
            for k, v in p.monthly_deposits.items():
                monthly[k] += v
            nsf_count += p.nsf_count
            if p.ending_balance is not None:
                ending = p.ending_balance

        degraded = False
        if not txns and not balances:
            synthetic = _synthetic_profile(parts)
            if synthetic is None:
                errors = "; ".join(p.error for p in parts if p.error)
                msg = "No transactions, balances or dollar amounts found" + (f" ({errors})" if errors else "")
                log.warning("statement analysis failed: %s", msg)
                return BankAnalysisResult.failed(msg)
            balances, txns, monthly, n = synthetic
            degraded = True
            log.warning("statement analysis degraded (synthetic estimate) from %d amount tokens", n)

        credits = [t for t in txns if t.type == "credit"]
        debits = [t for t in txns if t.type == "debit"]
        mca_descs = {_normalize_desc(t.description) for t in debits if _mca_name(t.description)}
        mca_lenders = sorted({_mca_name(t.description) for t in debits if _mca_name(t.description)})
        existing = len(mca_descs)
        if existing == 0:
            first_position = True
        else:
            first_position = any(k in t.description for t in txns for k in REFINANCE_KEYWORDS)

        dated = sorted(balances.items())
        if ending is None and dated:
            ending = dated[-1][1]

        result = BankAnalysisResult(
            avg_daily_balance=average_daily_balance(balances),
            avg_monthly_revenue=average_monthly_revenue(monthly, txns),
            nsf_count=nsf_count,
            negative_days=sum(1 for v in balances.values() if v < 0),
            existing_mca_count=existing,
            recent_funding_detected=any(_mca_name(t.description) for t in credits),
            mca_lenders=mca_lenders,
            deposit_consistency=deposit_consistency(monthly),
            total_deposits=round(sum(t.amount for t in credits), 2),
            ending_balance=round(ending or 0.0, 2),
            largest_deposit=round(max((t.amount for t in credits), default=0.0), 2),
            monthly_deposits=[{"month": k, "total": round(monthly[k], 2)} for k in sorted(monthly)],
            daily_balances=[{"date": d.isoformat(), "balance": v} for d, v in dated],
            needs_first_position=first_position,
            bank_names=sorted({p.bank for p in parts}),
            transaction_count=len(txns),
            analysis_success=True,
            status="degraded" if degraded else "measured",
            degraded=degraded,
        )
        if not degraded:
            log.info("statement analysis measured: %d transactions, %d dated balances, %d months",
                     len(txns), len(balances), len(monthly))
        return result
    except Exception as e:
        log.exception("statement analysis failed")
        return BankAnalysisResult.failed(str(e))

def analyze_bank_data(docs: Sequence[ExtractedDocument]) -> BankAnalysisResult:
    """Sequential collect + merge. pipeline.py runs the collect step in parallel."""
    try:
        parts = [collect_statement(d) for d in order_documents(docs)]
    except Exception as e:
        log.exception("statement analysis failed")
        return BankAnalysisResult.failed(str(e))
    return summarize_statements(parts)

def bank_fields(result: BankAnalysisResult) -> Dict[str, Any]:
    """Application-record fields backed by the analysis; a failed analysis backs none."""
    if not result.analysis_success:
        return {}
    out: Dict[str, Any] = {
        "nsfs": result.nsf_count,
        "negative_days": result.negative_days,
        "existing_mca_count": result.existing_mca_count,
        "has_existing_loans": result.existing_mca_count > 0,
        "needs_first_position": result.needs_first_position,
        "monthly_deposits": [m["total"] for m in result.monthly_deposits],
        "daily_balances": list(result.daily_balances),
        "largest_deposit": result.largest_deposit,
        "deposit_consistency": result.deposit_consistency,
        "ending_balance": result.ending_balance,
    }
    if result.daily_balances:
        out["avg_daily_balance"] = result.avg_daily_balance
    if result.transaction_count:
        out["avg_monthly_revenue"] = result.avg_monthly_revenue
    return out
