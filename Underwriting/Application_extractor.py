#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Funding-application field parser.

Every field has an ordered list of patterns in FIELD_PATTERNS (most specific first)
and one converter in FIELD_CONVERTERS. The first match whose converter returns a
value wins; a converter returning None means "not usable", and the search moves on.
Fields that never match are simply left out of the result.

Fields:
- business_name / owner_name
- credit_score (300-850)
- state (2-letter code; full names and "City, ST 12345" lines accepted)
- industry (curated vocabulary, rapidfuzz + keyword table)
- time_in_business (months)
- funding_requested / funding_purpose
- avg_monthly_revenue (stated on the form)
- has_existing_loans / has_prior_defaults / needs_first_position (yes/no)
"""

import os
import re
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from dateutil import parser as dateparser
from rapidfuzz import fuzz, process, utils

# ---------------- Vocabularies ----------------
US_STATES = {
    "AL":"Alabama","AK":"Alaska","AZ":"Arizona","AR":"Arkansas","CA":"California","CO":"Colorado","CT":"Connecticut",
    "DE":"Delaware","FL":"Florida","GA":"Georgia","HI":"Hawaii","ID":"Idaho","IL":"Illinois","IN":"Indiana","IA":"Iowa",
    "KS":"Kansas","KY":"Kentucky","LA":"Louisiana","ME":"Maine","MD":"Maryland","MA":"Massachusetts","MI":"Michigan",
    "MN":"Minnesota","MS":"Mississippi","MO":"Missouri","MT":"Montana","NE":"Nebraska","NV":"Nevada","NH":"New Hampshire",
    "NJ":"New Jersey","NM":"New Mexico","NY":"New York","NC":"North Carolina","ND":"North Dakota","OH":"Ohio",
    "OK":"Oklahoma","OR":"Oregon","PA":"Pennsylvania","RI":"Rhode Island","SC":"South Carolina","SD":"South Dakota",
    "TN":"Tennessee","TX":"Texas","UT":"Utah","VT":"Vermont","VA":"Virginia","WA":"Washington","WV":"West Virginia",
    "WI":"Wisconsin","WY":"Wyoming",
}
STATE_NAMES = {v.upper(): k for k, v in US_STATES.items()}  # "TEXAS"->"TX"

INDUSTRIES = [
    "Restaurant", "Retail", "Healthcare", "Technology", "Construction", "Manufacturing",
    "Transportation", "Finance", "Real Estate", "Education", "Hospitality", "Entertainment",
    "Agriculture", "Energy", "Legal Services", "Automotive", "Beauty & Wellness", "Fitness",
    "Home Services", "Professional Services",
]

# whole words; a trailing * makes it a prefix. First category wins.
INDUSTRY_KEYWORDS = {
    "Restaurant": ["restaurant*","pizza*","grill","diner","coffee","cafe","café","bistro","bbq","taqueria","bakery","catering","food service"],
    "Home Services": ["plumb*","hvac","electrician*","cleaning","janitorial","landscap*","pest control","handyman"],
    "Construction": ["construction","contractor*","roofing","remodel*","excavat*","concrete","framing"],
    "Automotive": ["automotive","auto repair","auto sales","auto body","car wash","mechanic*","tire*","body shop","dealership"],
    "Retail": ["retail","boutique","store*","shop","apparel","clothing","gift shop","convenience","ecommerce","e-commerce"],
    "Healthcare": ["clinic*","medical","dental","dentist*","orthodont*","healthcare","urgent care","chiropract*","pharmac*","physician*"],
    "Technology": ["software","technolog*","saas","it services","computer*","web development"],
    "Manufacturing": ["manufactur*","fabricat*","machine shop","factory"],
    "Transportation": ["trucking","logistics","transport*","freight","dispatch","fleet","courier*"],
    "Finance": ["finance","financial services","insurance","tax preparation","lending"],
    "Real Estate": ["real estate","property management","realty","realtor*"],
    "Education": ["school*","education","tutoring","daycare","child care","academy"],
    "Hospitality": ["hotel*","motel*","hospitality","lodging","bed and breakfast"],
    "Entertainment": ["entertainment","event planning","event venue","music","theater","theatre","film*"],
    "Agriculture": ["farm*","agricultur*","ranch*","dairy","crop*"],
    "Energy": ["energy","solar","oil and gas","fuel","gas station"],
    "Legal Services": ["law firm","law office*","attorney*","lawyer*","paralegal"],
    "Beauty & Wellness": ["salon*","spa","barber*","nail*","esthetic*","wellness","massage","cosmetic*"],
    "Fitness": ["gym*","fitness","yoga","crossfit","personal training","martial arts"],
    "Professional Services": ["consulting","cpa","accounting","bookkeeping","marketing","agency","staffing","architect*"],
}
INDUSTRY_FUZZY_CUTOFF = 85

YES_WORDS = {"yes", "y", "true"}
NO_WORDS = {"no", "n", "false"}

MAX_BUSINESS_AGE_YEARS = 150

FILENAME_NOISE_RE = re.compile(
    r"\b(application|applications|app|form|signed|final|copy|scan|scanned|mca|funding|merchant)\b", re.I)

# ---------------- Helpers ----------------
def _clip_value(raw: str) -> str:
    # forms often put two label/value pairs on one line
    s = re.split(r"\s{2,}|\t|\|", raw.strip())[0]
    return s.strip(" :;,-_.•")

def parse_yes_no(raw: Optional[str]) -> Optional[bool]:
    v = (raw or "").strip().rstrip(".!").lower()
    if v in YES_WORDS:
        return True
    if v in NO_WORDS:
        return False
    return None

def parse_money(raw: Optional[str]) -> Optional[float]:
    """'$1,250,000.00' -> 1250000.0, '75k' -> 75000.0; anything non-numeric -> None."""
    if not raw:
        return None
    tok = raw.strip().lstrip("$ ").split()
    if not tok:
        return None
    s = tok[0].replace("$", "").replace(",", "").rstrip(".").lower()
    mult = 1.0
    if s.endswith("k"):
        s, mult = s[:-1], 1_000.0
    elif s.endswith("m"):
        s, mult = s[:-1], 1_000_000.0
    try:
        return float(s) * mult
    except ValueError:
        return None

def normalize_state(raw: Optional[str]) -> Optional[str]:
    """'ca', 'CA', 'California', 'new york 10001' -> 2-letter code; None if unknown."""
    words = re.sub(r"[^A-Za-z ]", " ", raw or "").split()
    for n in range(len(words), 0, -1):
        cand = " ".join(words[:n]).upper()
        if cand in STATE_NAMES:
            return STATE_NAMES[cand]
        if n == 1 and len(cand) == 2 and cand in US_STATES:
            return cand
    return None

def _keyword_re(word: str) -> str:
    if word.endswith("*"):
        return r"\b" + re.escape(word[:-1])
    return r"\b" + re.escape(word) + r"\b"

def _keyword_industry(text: str) -> Optional[str]:
    low = (text or "").lower()
    for industry, words in INDUSTRY_KEYWORDS.items():
        for w in words:
            if re.search(_keyword_re(w), low):
                return industry
    return None

def normalize_industry(raw: Optional[str]) -> Optional[str]:
    cand = (raw or "").strip()
    if not cand:
        return None
    hit = process.extractOne(cand, INDUSTRIES, scorer=fuzz.WRatio,
                             processor=utils.default_process, score_cutoff=INDUSTRY_FUZZY_CUTOFF)
    if hit:
        return hit[0]
    return _keyword_industry(cand)

def _months_between(start: date, end: date) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month)

def business_name_from_filename(file_name: Optional[str]) -> Optional[str]:
    if not file_name:
        return None
    name, _ = os.path.splitext(os.path.basename(file_name))
    name = re.sub(r"[_\-.]+", " ", name)
    name = FILENAME_NOISE_RE.sub(" ", name)
    name = re.sub(r"\b\d+\b", " ", name)
    name = " ".join(name.split())
    return name.title() if len(name) >= 2 else None

# ---------------- Patterns ----------------
_F = re.I | re.M
_SEP = r"\s*[:\-]?\s*"
_MONEY_TAIL = r"(?P<value>[^\n]+)"

FIELD_PATTERNS: Dict[str, List[re.Pattern]] = {
    "business_name": [
        re.compile(r"\b(?:legal\s+)?business\s+(?:legal\s+)?name\s*[:\-]\s*(?P<value>[^\n]+)", _F),
        re.compile(r"\b(?:company|corporate|entity|merchant)\s+(?:legal\s+)?name\s*[:\-]\s*(?P<value>[^\n]+)", _F),
        re.compile(r"\b(?:dba|d/b/a|doing\s+business\s+as)\s*[:\-]\s*(?P<value>[^\n]+)", _F),
    ],
    "owner_name": [
        re.compile(r"\b(?:owner|principal|guarantor|applicant)(?:'s)?\s+(?:full\s+)?name\s*[:\-]\s*(?P<value>[^\n]+)", _F),
        re.compile(r"^\s*(?:owner|principal)\s*[:\-]\s*(?P<value>[^\n]+)", _F),
    ],
    "credit_score": [
        re.compile(r"\bcredit\s+score" + _SEP + r"(?P<value>\d{3})\b", _F),
        re.compile(r"\bfico(?:\s+score)?" + _SEP + r"(?P<value>\d{3})\b", _F),
        re.compile(r"\b(?:beacon|credit\s+rating)(?:\s+score)?" + _SEP + r"(?P<value>\d{3})\b", _F),
    ],
    "state": [
        re.compile(r"\b(?:business\s+)?state\s*[:\-]\s*(?P<value>[A-Za-z][A-Za-z .]*)", _F),
        re.compile(r"\b[A-Za-z][A-Za-z.\- ]+,\s*(?P<value>[A-Z]{2})\s+\d{5}(?:-\d{4})?\b", re.M),
        re.compile(r"\b(?P<value>" + "|".join(sorted(US_STATES.values(), key=len, reverse=True)) + r")\b", re.M),
    ],
    "industry": [
        re.compile(r"\b(?:industry|business\s+type|type\s+of\s+business|nature\s+of\s+business)\s*[:\-]\s*(?P<value>[^\n]+)", _F),
        re.compile(r"\b(?:sic|naics)\s+(?:code\s+)?description\s*[:\-]\s*(?P<value>[^\n]+)", _F),
    ],
    "time_in_business": [
        re.compile(r"\b(?:time|years|length)\s+in\s+business" + _SEP
                   + r"(?P<years>\d{1,3}(?:\.\d+)?)\s*(?:years?|yrs?)\.?\s*(?:,|and)?\s*"
                   + r"(?:(?P<months>\d{1,2})\s*(?:months?|mos?)\b)?", _F),
        re.compile(r"\b(?:time|length)\s+in\s+business" + _SEP + r"(?P<months>\d{1,4})\s*(?:months?|mos?)\b", _F),
        re.compile(r"\b(?:established|founded|(?:in\s+)?business\s+since|operating\s+since|year\s+started)"
                   + r"(?:\s+in)?" + _SEP + r"(?P<year>\d{4})\b", _F),
        re.compile(r"\b(?:business\s+start\s+date|date\s+(?:established|started|of\s+inception))" + _SEP
                   + r"(?P<date>\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4})", _F),
        re.compile(r"\byears\s+in\s+business" + _SEP + r"(?P<years>\d{1,3}(?:\.\d+)?)\b", _F),
        re.compile(r"\b(?:time|length)\s+in\s+business" + _SEP + r"(?P<months>\d{1,4})\b", _F),
    ],
    "funding_requested": [
        re.compile(r"\b(?:funding|loan|advance|capital)\s+(?:amount\s+)?(?:requested|needed|desired)" + _SEP + _MONEY_TAIL, _F),
        re.compile(r"\b(?:requested|desired)\s+(?:funding\s+|loan\s+)?amount" + _SEP + _MONEY_TAIL, _F),
        re.compile(r"\bamount\s+(?:requested|needed)" + _SEP + _MONEY_TAIL, _F),
        re.compile(r"\b(?:funding|loan)\s+amount" + _SEP + _MONEY_TAIL, _F),
    ],
    "funding_purpose": [
        re.compile(r"\b(?:use|purpose)\s+of\s+(?:funds|proceeds)\s*[:\-]\s*(?P<value>[^\n]+)", _F),
        re.compile(r"\b(?:funding|loan)\s+purpose\s*[:\-]\s*(?P<value>[^\n]+)", _F),
        re.compile(r"^\s*purpose\s*[:\-]\s*(?P<value>[^\n]+)", _F),
    ],
    "avg_monthly_revenue": [
        re.compile(r"\b(?:average\s+)?(?:gross\s+)?monthly\s+(?:revenue|sales|deposits)" + _SEP + _MONEY_TAIL, _F),
        re.compile(r"\b(?:gross\s+)?annual\s+(?:revenue|sales)" + _SEP + r"(?P<annual>[^\n]+)", _F),
    ],
    "has_existing_loans": [
        re.compile(r"\b(?:existing|current|outstanding|open)\s+(?:business\s+)?(?:loans?|advances?|mcas?|cash\s+advances?)"
                   + r"\s*\??" + _SEP + r"(?P<value>[^\s,;]+)", _F),
        re.compile(r"\bany\s+(?:existing|outstanding|open)\s+(?:loans?|advances?)[^\n:?]*[?:]\s*(?P<value>[^\s,;]+)", _F),
    ],
    "has_prior_defaults": [
        re.compile(r"\b(?:prior|previous|past)\s+defaults?\s*\??" + _SEP + r"(?P<value>[^\s,;]+)", _F),
        re.compile(r"\bever\s+defaulted[^\n:?]*[?:]\s*(?P<value>[^\s,;]+)", _F),
    ],
    "needs_first_position": [
        re.compile(r"\b(?:needs?\s+)?(?:first|1st)\s+position(?:\s+(?:needed|required|only))?\s*\??" + _SEP
                   + r"(?P<value>[^\s,;]+)", _F),
    ],
}

# ---------------- Converters ----------------
def _conv_text(m: re.Match) -> Optional[str]:
    v = _clip_value(m.group("value"))
    return v if 2 <= len(v) <= 120 else None

def _conv_credit_score(m: re.Match) -> Optional[int]:
    v = int(m.group("value"))
    return v if 300 <= v <= 850 else None

def _conv_state(m: re.Match) -> Optional[str]:
    return normalize_state(m.group("value"))

def _conv_industry(m: re.Match) -> Optional[str]:
    return normalize_industry(_clip_value(m.group("value")))

def _conv_time_in_business(m: re.Match) -> Optional[int]:
    g = m.groupdict()
    today = date.today()
    if g.get("year"):
        year = int(g["year"])
        if year > today.year or today.year - year > MAX_BUSINESS_AGE_YEARS:
            return None
        return (today.year - year) * 12
    if g.get("date"):
        try:
            started = dateparser.parse(g["date"], dayfirst=False).date()
        except (ValueError, OverflowError):
            return None
        months = _months_between(started, today)
        if months < 0 or months > MAX_BUSINESS_AGE_YEARS * 12:
            return None
        return months
    if g.get("years"):
        months = float(g["years"]) * 12 + int(g.get("months") or 0)
    elif g.get("months"):
        months = float(g["months"])
    else:
        return None
    if months > MAX_BUSINESS_AGE_YEARS * 12:
        return None
    return int(round(months))

def _conv_funding(m: re.Match) -> Optional[float]:
    v = parse_money(m.group("value"))
    return v if v is not None and v > 0 else None

def _conv_revenue(m: re.Match) -> Optional[float]:
    g = m.groupdict()
    if g.get("annual"):
        v = parse_money(g["annual"])
        return round(v / 12.0, 2) if v is not None and v >= 0 else None
    v = parse_money(g.get("value"))
    return v if v is not None and v >= 0 else None

def _conv_bool(m: re.Match) -> Optional[bool]:
    return parse_yes_no(m.group("value"))

FIELD_CONVERTERS: Dict[str, Callable[[re.Match], Any]] = {
    "business_name": _conv_text,
    "owner_name": _conv_text,
    "credit_score": _conv_credit_score,
    "state": _conv_state,
    "industry": _conv_industry,
    "time_in_business": _conv_time_in_business,
    "funding_requested": _conv_funding,
    "funding_purpose": _conv_text,
    "avg_monthly_revenue": _conv_revenue,
    "has_existing_loans": _conv_bool,
    "has_prior_defaults": _conv_bool,
    "needs_first_position": _conv_bool,
}

# ---------------- Public API ----------------
def first_match(field_name: str, text: str) -> Any:
    convert = FIELD_CONVERTERS[field_name]
    for pat in FIELD_PATTERNS[field_name]:
        for m in pat.finditer(text or ""):
            value = convert(m)
            if value is not None:
                return value
    return None

def parse_application(text: str, fallback_name: Optional[str] = None) -> Dict[str, Any]:
    """Partial application record; keys appear only for fields that were found."""
    text = text or ""
    out: Dict[str, Any] = {}
    for field_name in FIELD_PATTERNS:
        value = first_match(field_name, text)
        if value is not None:
            out[field_name] = value

    if "business_name" not in out:
        name = business_name_from_filename(fallback_name)
        if name:
            out["business_name"] = name
    if "industry" not in out and out.get("business_name"):
        # "Joe's Pizza LLC" style names carry the industry
        guess = _keyword_industry(out["business_name"])
        if guess:
            out["industry"] = guess
    return out
