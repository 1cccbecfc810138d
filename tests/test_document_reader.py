"""Upload reader: type resolution, tabular parsing, PDF branch choice and the OCR deadline."""

from io import BytesIO

import openpyxl
import pytest
from PIL import Image

import Document_reader as reader
from Document_reader import ExtractionFailure


def _png_bytes() -> bytes:
    buf = BytesIO()
    Image.new("RGB", (40, 20), "white").save(buf, format="PNG")
    return buf.getvalue()


def test_csv_rows_are_coerced_and_blank_rows_dropped():
    data = b"\xef\xbb\xbf Date , Amount ,Description\n2025-01-05,1500.50,Deposit\n,,\n2025-01-06,-20,Fee\n"
    doc = reader.extract(data, "text/csv", "stmt.csv")

    assert doc.method == "csv"
    assert doc.is_tabular
    assert doc.rows == [
        {"Date": "2025-01-05", "Amount": 1500.5, "Description": "Deposit"},
        {"Date": "2025-01-06", "Amount": -20, "Description": "Fee"},
    ]
    assert doc.text.splitlines()[0] == "Date Amount Description"


def test_csv_without_data_rows_fails():
    with pytest.raises(ExtractionFailure) as exc:
        reader.extract(b"Date,Amount\n", "text/csv", "empty.csv")
    assert exc.value.manual_entry is True
    assert exc.value.attempted == ["csv"]


def test_octet_stream_resolved_from_extension():
    assert reader.resolve_type("application/octet-stream", "a.CSV") == "text/csv"
    assert reader.resolve_type("", "scan.png") == "image/png"
    assert reader.resolve_type("application/vnd.ms-excel", "export.csv") == "text/csv"
    assert reader.resolve_type("application/pdf; charset=binary", "x.bin") == "application/pdf"


def test_plain_text_loses_tabs():
    doc = reader.extract(b"Business Name:\tAcme Corp\n", "text/plain", "app.txt")
    assert doc.method == "text"
    assert "\t" not in doc.text
    assert "Acme Corp" in doc.text


def test_unsupported_type_fails():
    with pytest.raises(ExtractionFailure) as exc:
        reader.extract(b"PK\x03\x04", "application/zip", "bundle.zip")
    assert "unsupported" in exc.value.reason


def test_empty_upload_fails():
    with pytest.raises(ExtractionFailure):
        reader.extract(b"", "text/csv", "empty.csv")


def test_spreadsheet_rows_use_first_non_empty_row_as_header():
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.append([None, None, None])
    ws.append(["Date", "Amount", "Description"])
    ws.append(["2025-02-01", 2500, "Deposit"])
    ws.append([None, None, None])
    ws.append(["2025-02-03", "-75.25", "Fee"])
    buf = BytesIO()
    wb.save(buf)

    doc = reader.extract(buf.getvalue(), "", "statement.xlsx")

    assert doc.method == "spreadsheet"
    assert doc.rows == [
        {"Date": "2025-02-01", "Amount": 2500, "Description": "Deposit"},
        {"Date": "2025-02-03", "Amount": -75.25, "Description": "Fee"},
    ]


def test_legacy_xls_is_reported_as_failure():
    with pytest.raises(ExtractionFailure) as exc:
        reader.extract(b"\xd0\xcf\x11\xe0 legacy workbook", "", "old.xls")
    assert exc.value.attempted == ["spreadsheet"]


def test_cluster_words_groups_by_row_band():
    words = [
        {"text": "150.00", "x0": 300, "top": 100.4},
        {"text": "01/05", "x0": 10, "top": 99.9},
        {"text": "Deposit", "x0": 80, "top": 100.2},
        {"text": "Opening", "x0": 10, "top": 80.0},
    ]
    assert reader.cluster_words(words) == ["Opening", "01/05 Deposit 150.00"]


def test_pdf_with_text_layer_stays_native(monkeypatch):
    text = "Statement Period 01/01/2025 to 01/31/2025 " * 3
    monkeypatch.setattr(reader, "_pdf_text_layer", lambda data: (text, ["01/05 Deposit 150.00"]))

    def no_ocr(*args, **kwargs):
        raise AssertionError("OCR should not run")

    monkeypatch.setattr(reader, "_ocr_pdf", no_ocr)
    doc = reader.extract(b"%PDF-1.4", "application/pdf", "s.pdf")

    assert doc.method == "native"
    assert doc.table_lines == ["01/05 Deposit 150.00"]


def test_pdf_without_text_layer_falls_back_to_ocr(monkeypatch):
    monkeypatch.setattr(reader, "_pdf_text_layer", lambda data: ("", []))
    monkeypatch.setattr(reader, "_ocr_pdf", lambda data, timeout, attempted: "Business Name: Acme Corp")

    doc = reader.extract(b"%PDF-1.4", "application/pdf", "scan.pdf")

    assert doc.method == "ocr"
    assert doc.text == "Business Name: Acme Corp"


def test_pdf_ocr_with_no_text_fails_with_both_methods_attempted(monkeypatch):
    monkeypatch.setattr(reader, "_pdf_text_layer", lambda data: ("", []))
    monkeypatch.setattr(reader, "_ocr_pdf", lambda data, timeout, attempted: "")

    with pytest.raises(ExtractionFailure) as exc:
        reader.extract(b"%PDF-1.4", "application/pdf", "blank.pdf")
    assert exc.value.attempted == ["native", "ocr"]


def test_image_ocr_timeout_becomes_extraction_failure(monkeypatch):
    def timed_out(*args, **kwargs):
        raise RuntimeError("Tesseract process timeout")

    monkeypatch.setattr(reader.pytesseract, "image_to_string", timed_out)

    with pytest.raises(ExtractionFailure) as exc:
        reader.extract(_png_bytes(), "image/png", "photo.png", ocr_timeout=5)
    assert exc.value.attempted == ["ocr"]
    assert "timeout" in str(exc.value)


def test_image_ocr_with_spent_budget_never_calls_tesseract(monkeypatch):
    def called(*args, **kwargs):
        raise AssertionError("tesseract should not be called")

    monkeypatch.setattr(reader.pytesseract, "image_to_string", called)

    with pytest.raises(ExtractionFailure) as exc:
        reader.extract(_png_bytes(), "image/png", "photo.png", ocr_timeout=0)
    assert "time budget" in exc.value.reason


def test_image_ocr_passes_remaining_time_to_tesseract(monkeypatch):
    seen = {}

    def fake(img, lang, config, timeout):
        seen.update(lang=lang, config=config, timeout=timeout)
        return "Credit Score: 700"

    monkeypatch.setattr(reader.pytesseract, "image_to_string", fake)
    doc = reader.extract(_png_bytes(), "image/png", "photo.png", ocr_timeout=30)

    assert doc.method == "ocr"
    assert 0 < seen["timeout"] <= 30
    assert "tessedit_char_whitelist" in seen["config"]


def test_extraction_is_repeatable():
    data = b"Date,Amount,Description\n2025-01-05,100.00,Deposit\n"
    first = reader.extract(data, "text/csv", "a.csv")
    second = reader.extract(data, "text/csv", "a.csv")
    assert first == second


def test_csv_parser_error_becomes_extraction_failure():
    data = b'Date,Amount,Description\n2025-01-05,10.00,"' + b"x" * 200_000 + b'"\n'
    with pytest.raises(ExtractionFailure) as exc:
        reader.extract(data, "text/csv", "huge.csv")
    assert exc.value.attempted == ["csv"]
    assert "unreadable CSV" in exc.value.reason


def test_damaged_workbook_becomes_extraction_failure(monkeypatch):
    def broken(data):
        raise ValueError("Max. recursion depth reached in XML")

    monkeypatch.setattr(reader, "parse_spreadsheet_rows", broken)

    with pytest.raises(ExtractionFailure) as exc:
        reader.extract(b"PK\x03\x04", "", "book.xlsx")
    assert exc.value.attempted == ["spreadsheet"]


def test_missing_tesseract_becomes_extraction_failure(monkeypatch):
    def not_installed(*args, **kwargs):
        raise reader.pytesseract.TesseractNotFoundError()

    monkeypatch.setattr(reader.pytesseract, "image_to_string", not_installed)

    with pytest.raises(ExtractionFailure) as exc:
        reader.extract(_png_bytes(), "image/png", "photo.png", ocr_timeout=5)
    assert exc.value.attempted == ["ocr"]
    assert "OCR unavailable" in exc.value.reason
