#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Upload reader: turns PDF / image / CSV / spreadsheet / text bytes into text plus,
where the input is tabular, header-keyed rows.

PDF: embedded text layer first (pdfplumber). Under MIN_TEXT_CHARS characters we
render the pages (pdf2image) and OCR them (pytesseract). OCR runs against one overall
deadline; running out of time is an ExtractionFailure so the caller can drop to
manual entry instead of hanging.

The word positions pdfplumber reports are also clustered into rows by rounded `top`
so the statement parser gets table-like lines even when extract_text() interleaves
columns.
"""

import csv
import io
import logging
import mimetypes
import os
import re
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple

import cv2
import numpy as np
import openpyxl
import pdfplumber
import pytesseract
from pdf2image import convert_from_bytes
from pdf2image.exceptions import PDFPopplerTimeoutError
from PIL import Image, UnidentifiedImageError

from config import MIN_TEXT_CHARS, OCR_DPI, OCR_TIMEOUT_SECONDS, TESS_LANG, TESS_PSM

log = logging.getLogger("reader")

# ---------------- Types ----------------
PDF_TYPES = {"application/pdf", "application/x-pdf"}
CSV_TYPES = {"text/csv", "application/csv", "text/comma-separated-values"}
SHEET_TYPES = {
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}
TEXT_TYPES = {"text/plain"}

EXTENSION_TYPES = {
    ".pdf": "application/pdf",
    ".csv": "text/csv",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".xlsm": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".xls": "application/vnd.ms-excel",
    ".txt": "text/plain",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
}

# digits, letters and the punctuation that shows up on statements/applications
OCR_WHITELIST = (
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"
    "$.,-/:()%&#@"
)
PDF_OCR_CONFIG = f"--psm {TESS_PSM}"
IMAGE_OCR_CONFIG = f"--psm {TESS_PSM} -c tessedit_char_whitelist={OCR_WHITELIST}"

ROW_BAND = 3.0
NUMERIC_CELL_RE = re.compile(r"^-?\d+(?:\.\d+)?$")


class ExtractionFailure(Exception):
    """No method produced usable content. Always recoverable through manual entry."""

    def __init__(self, reason: str, attempted: Optional[List[str]] = None):
        super().__init__(reason)
        self.reason = reason
        self.attempted = list(attempted or [])
        self.manual_entry = True

    def __str__(self) -> str:
        tried = ", ".join(self.attempted) or "none"
        return f"{self.reason} (attempted: {tried})"


@dataclass
class ExtractedDocument:
    text: str
    method: str                                   # native | ocr | csv | spreadsheet | text | remote
    rows: Optional[List[Dict[str, Any]]] = None   # header-keyed rows for tabular input
    table_lines: List[str] = field(default_factory=list)
    file_name: Optional[str] = None
    declared_type: str = ""

    @property
    def is_tabular(self) -> bool:
        return self.rows is not None


# ---------------- Type resolution ----------------
def resolve_type(declared_type: Optional[str], file_name: Optional[str] = None) -> str:
    t = (declared_type or "").split(";")[0].strip().lower()
    ext = os.path.splitext(file_name or "")[1].lower()
    # browsers on Windows label .csv uploads as excel
    if t in SHEET_TYPES and ext == ".csv":
        return "text/csv"
    if t and t != "application/octet-stream":
        return t
    if ext in EXTENSION_TYPES:
        return EXTENSION_TYPES[ext]
    guess, _ = mimetypes.guess_type(file_name or "")
    return (guess or "").lower()


# ---------------- Cells / rows ----------------
def coerce_cell(value: Any) -> Any:
    if isinstance(value, str):
        s = value.strip()
        if NUMERIC_CELL_RE.match(s):
            return float(s) if "." in s else int(s)
        return s
    return value

def _decode(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1")

def _blank(v: Any) -> bool:
    return v is None or (isinstance(v, str) and not v.strip())

def parse_csv_rows(text: str) -> List[Dict[str, Any]]:
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        return []
    rows: List[Dict[str, Any]] = []
    for raw in reader:
        row = {(k or "").strip(): coerce_cell(v) for k, v in raw.items() if k is not None}
        if all(_blank(v) for v in row.values()):
            continue
        rows.append(row)
    return rows

def parse_spreadsheet_rows(data: bytes) -> List[Dict[str, Any]]:
    wb = openpyxl.load_workbook(BytesIO(data), read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        headers: Optional[List[str]] = None
        rows: List[Dict[str, Any]] = []
        for values in ws.iter_rows(values_only=True):
            if headers is None:
                if any(not _blank(v) for v in values):
                    headers = [str(v).strip() if not _blank(v) else f"column_{i + 1}"
                               for i, v in enumerate(values)]
                continue
            if all(_blank(v) for v in values):
                continue
            rows.append({h: coerce_cell(v) for h, v in zip(headers, values)})
        return rows
    finally:
        wb.close()

def _cell_text(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, (datetime, date)):
        return v.strftime("%m/%d/%Y")
    return str(v)

def rows_to_text(rows: List[Dict[str, Any]]) -> str:
    if not rows:
        return ""
    headers = list(rows[0].keys())
    lines = [" ".join(headers)]
    for row in rows:
        lines.append(" ".join(_cell_text(row.get(h)) for h in headers).strip())
    return "\n".join(lines)


# ---------------- PDF ----------------
def cluster_words(words: List[Dict[str, Any]], band: float = ROW_BAND) -> List[str]:
    """Group pdfplumber words into visual rows (same rounded `top`), left to right."""
    rows: Dict[int, List[Dict[str, Any]]] = defaultdict(list)
    for w in words:
        rows[int(round(float(w.get("top", 0.0)) / band))].append(w)
    lines = []
    for key in sorted(rows):
        ws = sorted(rows[key], key=lambda w: float(w.get("x0", 0.0)))
        line = " ".join((w.get("text") or "").strip() for w in ws).strip()
        if line:
            lines.append(line)
    return lines

def _pdf_text_layer(data: bytes) -> Tuple[str, List[str]]:
    blocks: List[str] = []
    lines: List[str] = []
    with pdfplumber.open(BytesIO(data)) as pdf:
        for page in pdf.pages:
            t = page.extract_text() or ""
            if t.strip():
                blocks.append(t)
            lines.extend(cluster_words(page.extract_words() or []))
    return "\n".join(blocks).strip(), lines

def deskew(image: np.ndarray) -> np.ndarray:
    gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY) if len(image.shape) == 3 else image
    gray = cv2.bitwise_not(gray)
    thresh = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY | cv2.THRESH_OTSU)[1]
    coords = np.column_stack(np.where(thresh > 0))
    if coords.size == 0:
        return image
    angle = cv2.minAreaRect(coords)[-1]
    angle = -(90 + angle) if angle < -45 else -angle
    h, w = image.shape[:2]
    m = cv2.getRotationMatrix2D((w // 2, h // 2), angle, 1.0)
    return cv2.warpAffine(image, m, (w, h), flags=cv2.INTER_CUBIC, borderMode=cv2.BORDER_REPLICATE)

def preprocess_for_ocr(pil_img: Image.Image) -> Image.Image:
    try:
        cv_img = cv2.cvtColor(np.array(pil_img.convert("RGB")), cv2.COLOR_RGB2BGR)
        cv_img = deskew(cv_img)
        gray = cv2.cvtColor(cv_img, cv2.COLOR_BGR2GRAY)
        gray = cv2.normalize(gray, None, 0, 255, cv2.NORM_MINMAX)
        gray = cv2.medianBlur(gray, 3)
        bin_img = cv2.adaptiveThreshold(gray, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
                                        cv2.THRESH_BINARY, 31, 9)
        return Image.fromarray(bin_img)
    except cv2.error as e:
        log.warning("OCR preprocessing skipped: %s", e)
        return pil_img

def _remaining(deadline: float, attempted: List[str]) -> float:
    left = deadline - time.monotonic()
    if left <= 0:
        raise ExtractionFailure("OCR exceeded time budget", attempted)
    return left

def _ocr(img: Image.Image, config: str, deadline: float, attempted: List[str]) -> str:
    try:
        return pytesseract.image_to_string(img, lang=TESS_LANG, config=config,
                                           timeout=_remaining(deadline, attempted))
    except RuntimeError as e:
        # pytesseract signals its own timeout as RuntimeError
        raise ExtractionFailure(f"OCR stopped: {e}", attempted) from e
    except (pytesseract.TesseractNotFoundError, OSError) as e:
        raise ExtractionFailure(f"OCR unavailable: {e}", attempted) from e

def _ocr_pdf(data: bytes, timeout: float, attempted: List[str]) -> str:
    deadline = time.monotonic() + timeout
    try:
        images = convert_from_bytes(data, dpi=OCR_DPI, timeout=max(1, int(timeout)))
    except PDFPopplerTimeoutError as e:
        raise ExtractionFailure("PDF rendering exceeded time budget", attempted) from e
    texts = [_ocr(preprocess_for_ocr(img), PDF_OCR_CONFIG, deadline, attempted) for img in images]
    return "\n".join(texts).strip()


# ---------------- Public API ----------------
def extract(data: bytes, declared_type: Optional[str], file_name: Optional[str] = None,
            ocr_timeout: Optional[float] = None) -> ExtractedDocument:
    if not data:
        raise ExtractionFailure("empty upload", [])
    kind = resolve_type(declared_type, file_name)
    timeout = OCR_TIMEOUT_SECONDS if ocr_timeout is None else ocr_timeout

    if kind in PDF_TYPES:
        return _extract_pdf(data, kind, file_name, timeout)
    if kind.startswith("image/"):
        return _extract_image(data, kind, file_name, timeout)
    if kind in CSV_TYPES:
        try:
            rows = parse_csv_rows(_decode(data))
        except csv.Error as e:
            raise ExtractionFailure(f"unreadable CSV: {e}", ["csv"]) from e
        if not rows:
            raise ExtractionFailure("CSV has no data rows", ["csv"])
        return ExtractedDocument(rows_to_text(rows), "csv", rows=rows, file_name=file_name, declared_type=kind)
    if kind in SHEET_TYPES:
        try:
            rows = parse_spreadsheet_rows(data)
        except Exception as e:
            # openpyxl reports damaged workbooks as zip, XML or key errors
            raise ExtractionFailure(f"unreadable spreadsheet: {e}", ["spreadsheet"]) from e
        if not rows:
            raise ExtractionFailure("spreadsheet has no data rows", ["spreadsheet"])
        return ExtractedDocument(rows_to_text(rows), "spreadsheet", rows=rows, file_name=file_name, declared_type=kind)
    if kind in TEXT_TYPES or kind.startswith("text/"):
        text = _decode(data)
        if not text.strip():
            raise ExtractionFailure("text file is empty", ["text"])
        return ExtractedDocument(text.replace("\t", " "), "text", file_name=file_name, declared_type=kind)

    raise ExtractionFailure(f"unsupported file type: {kind or 'unknown'}", [])

def _extract_pdf(data: bytes, kind: str, file_name: Optional[str], timeout: float) -> ExtractedDocument:
    attempted = ["native"]
    text, lines = "", []
    try:
        text, lines = _pdf_text_layer(data)
    except Exception as e:
        log.warning("pdf text layer failed for %s: %s", file_name, e)
    if len(text) >= MIN_TEXT_CHARS:
        return ExtractedDocument(text, "native", table_lines=lines, file_name=file_name, declared_type=kind)

    attempted.append("ocr")
    log.info("text layer too short (%d chars) for %s, running OCR", len(text), file_name)
    try:
        ocr_text = _ocr_pdf(data, timeout, attempted)
    except ExtractionFailure:
        raise
    except Exception as e:
        raise ExtractionFailure(f"OCR failed: {e}", attempted) from e
    if not ocr_text:
        raise ExtractionFailure("no text recovered", attempted)
    return ExtractedDocument(ocr_text, "ocr", file_name=file_name, declared_type=kind)

def _extract_image(data: bytes, kind: str, file_name: Optional[str], timeout: float) -> ExtractedDocument:
    attempted = ["ocr"]
    try:
        img = Image.open(BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ExtractionFailure(f"unreadable image: {e}", attempted) from e
    text = _ocr(img.convert("RGB"), IMAGE_OCR_CONFIG, time.monotonic() + timeout, attempted).strip()
    if not text:
        raise ExtractionFailure("no text recovered", attempted)
    return ExtractedDocument(text, "ocr", file_name=file_name, declared_type=kind)
