import pytest

from conftest import MemoryStore
from reconcile import (DEFAULTS, REQUIRED_FIELDS, ApplicationRecord, ExtractionProvenance, RecordValidationError,
                       ReviewRequired, confirm, ensure_submittable, persist_application, reconcile,
                       record_from_dict)


def test_missing_required_fields_are_defaulted_and_flagged():
    out = reconcile({"business_name": "Acme Corp", "credit_score": 700}, {})

    missing = set(REQUIRED_FIELDS) - {"business_name", "credit_score"}
    assert set(out.provenance.missing_fields) == missing
    assert out.provenance.requires_manual_entry is True
    for f in missing:
        assert getattr(out.record, f) == DEFAULTS[f]
    assert out.record.business_name == "Acme Corp"


def test_nothing_found_means_every_default():
    out = reconcile({}, {})
    assert out.record.business_name == "Unknown Business"
    assert out.record.credit_score == 650
    assert out.record.state == "CA"
    assert out.record.industry == "Retail"
    assert out.record.time_in_business == 24
    assert out.record.funding_requested == 75000
    assert out.provenance.missing_fields == list(REQUIRED_FIELDS)


def test_application_values_win_over_bank_values():
    app = {"business_name": "Acme Corp", "credit_score": 700, "state": "CA", "industry": "Retail",
           "time_in_business": 36, "funding_requested": 50000, "avg_monthly_revenue": 18000}
    bank = {"avg_monthly_revenue": 21000.0, "avg_daily_balance": 4200.0, "nsfs": 2}
    out = reconcile(app, bank)

    assert out.record.avg_monthly_revenue == 18000
    assert out.record.avg_daily_balance == 4200.0
    assert out.record.nsfs == 2
    assert out.provenance.missing_fields == []
    assert out.provenance.requires_manual_entry is False


def test_optional_flags_are_assumed_not_missing():
    out = reconcile({"business_name": "Acme Corp", "credit_score": 700, "state": "CA", "industry": "Retail",
                     "time_in_business": 36, "funding_requested": 50000, "avg_monthly_revenue": 18000,
                     "avg_daily_balance": 3000}, {})

    assert out.record.has_prior_defaults is False
    assert out.record.needs_first_position is False
    assert set(out.provenance.assumed_fields) == {"has_prior_defaults", "needs_first_position"}
    assert out.provenance.requires_manual_entry is False


def test_degraded_bank_values_are_estimates_that_need_review():
    app = {"business_name": "Acme Corp", "credit_score": 700, "state": "CA", "industry": "Retail",
           "time_in_business": 36, "funding_requested": 50000}
    out = reconcile(app, {"avg_monthly_revenue": 2000.0, "avg_daily_balance": 1000.0}, estimated=True)

    assert out.provenance.missing_fields == []
    assert set(out.provenance.estimated_fields) == {"avg_monthly_revenue", "avg_daily_balance"}
    assert out.provenance.requires_manual_entry is True


def test_error_alone_forces_review():
    out = reconcile({}, {}, error="OCR exceeded time budget (attempted: native, ocr)")
    assert out.provenance.error.startswith("OCR exceeded")
    assert out.provenance.requires_manual_entry is True


def test_invalid_values_are_treated_as_missing():
    out = reconcile({"credit_score": 990, "funding_requested": -5, "state": "Atlantis"}, {})
    assert {"credit_score", "funding_requested", "state"} <= set(out.provenance.missing_fields)


def test_record_holds_no_review_markers():
    out = reconcile({}, {})
    row = out.record.to_dict()
    assert "requires_manual_entry" not in row
    assert "missing_fields" not in row
    assert out.to_dict()["provenance"]["requires_manual_entry"] is True


def test_confirm_builds_clean_record(application_record):
    reconciled = reconcile({"business_name": "Acme Corp"}, {})
    edits = {k: v for k, v in application_record.to_dict().items() if k != "business_name"}
    record = confirm(reconciled.record, edits)

    assert isinstance(record, ApplicationRecord)
    assert record.credit_score == 700
    assert record.business_name == "Acme Corp"


def test_confirm_rejects_bad_edits(application_record):
    with pytest.raises(RecordValidationError) as exc:
        confirm(application_record, {"credit_score": "abc"})
    assert "credit_score has an invalid value" in exc.value.problems


def test_record_from_dict_requires_every_required_field():
    with pytest.raises(RecordValidationError) as exc:
        record_from_dict({"business_name": "Acme Corp"})
    assert "credit_score is required" in exc.value.problems


def test_record_from_dict_coerces_strings():
    record = record_from_dict({
        "business_name": "Acme Corp", "credit_score": "712", "state": "texas", "industry": "retail",
        "time_in_business": "30", "avg_daily_balance": "$2,500", "avg_monthly_revenue": "15000",
        "funding_requested": "40000", "has_existing_loans": "yes",
    })
    assert record.credit_score == 712
    assert record.state == "TX"
    assert record.industry == "Retail"
    assert record.avg_daily_balance == 2500.0
    assert record.has_existing_loans is True


def test_ensure_submittable():
    ensure_submittable(ExtractionProvenance())
    with pytest.raises(ReviewRequired):
        ensure_submittable(None)
    with pytest.raises(ReviewRequired):
        ensure_submittable(ExtractionProvenance(missing_fields=["state"], requires_manual_entry=True))


def test_persist_drops_unknown_columns(application_record):
    store = MemoryStore(columns=["business_name", "credit_score", "state", "user_id", "created_at"])
    saved = persist_application(store, application_record, user_id="user-a")

    assert set(store.inserted[0]) == {"business_name", "credit_score", "state", "user_id", "created_at", "id"}
    assert saved["user_id"] == "user-a"


def test_persist_with_known_columns_keeps_full_record(application_record):
    store = MemoryStore()
    persist_application(store, application_record)
    row = store.inserted[0]
    assert row["avg_monthly_revenue"] == 20000.0
    assert "user_id" not in row
