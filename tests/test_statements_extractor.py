from datetime import date

import pytest

import Document_reader as reader
import Statements_extractor as stx
from conftest import build_csv, daily_balance_csv, three_month_csv


def _csv_doc(data: bytes, name: str = "statement.csv"):
    return reader.extract(data, "text/csv", name)


def _text_doc(text: str, name: str = "statement.txt"):
    return reader.ExtractedDocument(text=text, method="text", file_name=name)


def test_three_even_months_of_credits():
    result = stx.analyze_bank_data([_csv_doc(three_month_csv())])

    assert result.analysis_success is True
    assert result.status == "measured"
    assert result.avg_monthly_revenue == 20000
    assert result.deposit_consistency == 100
    assert result.total_deposits == 60000
    assert result.largest_deposit == 10000
    assert [m["month"] for m in result.monthly_deposits] == ["2025-01", "2025-02", "2025-03"]
    assert result.transaction_count == 9


def test_uneven_months_lower_consistency():
    rows = [["2025-01-05", "10000.00", "Deposit"],
            ["2025-02-05", "30000.00", "Deposit"]]
    result = stx.analyze_bank_data([_csv_doc(build_csv(rows))])

    assert result.avg_monthly_revenue == 20000
    assert result.deposit_consistency == 50


def test_unparseable_text_fails_with_constant_defaults():
    result = stx.analyze_bank_data([_text_doc("hello world\nnothing to see here")])

    assert result.analysis_success is False
    assert result.status == "failed"
    assert result.error_message
    for key, value in stx.FAILURE_DEFAULTS.items():
        assert getattr(result, key) == value
    assert result.mca_lenders == []


def test_no_documents_fails():
    result = stx.analyze_bank_data([])
    assert result.analysis_success is False


def test_dollar_amounts_without_dates_give_degraded_estimate():
    result = stx.analyze_bank_data([_text_doc("Summary of account\nAmount due $1,234.56\nOther $765.44")])

    assert result.analysis_success is True
    assert result.degraded is True
    assert result.status == "degraded"
    assert result.avg_daily_balance == 1000.0
    assert result.avg_monthly_revenue == 2000.0


def test_text_lines_with_running_balance_and_sections():
    text = "\n".join([
        "Statement Period 01/01/2025 to 01/31/2025",
        "Beginning Balance $1,000.00",
        "Deposits and Credits",
        "01/03 Card Settlement 2,500.00 3,500.00",
        "01/10 Mobile Check 1,000.00 4,500.00",
        "Withdrawals and Debits",
        "01/12 Rent 4,700.00 -200.00",
        "01/13 NSF Returned Item Fee 35.00 -235.00",
        "01/20 OnDeck ACH 500.00 -735.00",
        "Ending Balance -$735.00",
    ])
    result = stx.analyze_bank_data([_text_doc(text)])

    assert result.analysis_success is True
    assert result.total_deposits == 3500
    assert result.nsf_count == 1
    assert result.nsf_days == 1
    assert result.negative_days == 3
    assert result.existing_mca_count == 1
    assert result.mca_lenders == ["ondeck"]
    assert result.needs_first_position is False
    assert result.ending_balance == -735.0
    assert [b["date"] for b in result.daily_balances][0] == "2025-01-03"


def test_no_mca_debits_means_first_position():
    result = stx.analyze_bank_data([_csv_doc(three_month_csv())])
    assert result.existing_mca_count == 0
    assert result.needs_first_position is True


def test_average_daily_balance_uses_last_thirty_days():
    result = stx.analyze_bank_data([_csv_doc(daily_balance_csv(40))])
    assert result.avg_daily_balance == 100.0


def test_separate_credit_and_debit_columns():
    rows = [["01/05/2025", "1200.00", ""], ["01/06/2025", "", "200.00"]]
    data = build_csv(rows, ["Posting Date", "Deposits", "Withdrawals"])
    result = stx.analyze_bank_data([_csv_doc(data)])

    assert result.total_deposits == 1200
    assert result.transaction_count == 2


def test_type_column_wins_over_sign():
    rows = [["2025-03-01", "250.00", "Transfer", "DEBIT"], ["2025-03-02", "900.00", "Sale", "Credit"]]
    data = build_csv(rows, ["Date", "Amount", "Description", "Type"])
    result = stx.analyze_bank_data([_csv_doc(data)])
    assert result.total_deposits == 900


def test_rows_without_date_column_fall_back_to_text():
    data = build_csv([["foo", "bar"]], ["Alpha", "Beta"])
    result = stx.analyze_bank_data([_csv_doc(data)])
    assert result.analysis_success is False


def test_order_of_documents_does_not_matter():
    jan = _csv_doc(build_csv([["2025-01-05", "5000.00", "Deposit", "5000.00"]],
                             ["Date", "Amount", "Description", "Balance"]), "a_jan.csv")
    feb = _csv_doc(build_csv([["2025-01-05", "7000.00", "Deposit", "7000.00"]],
                             ["Date", "Amount", "Description", "Balance"]), "b_feb.csv")

    forward = stx.analyze_bank_data([jan, feb]).to_dict()
    backward = stx.analyze_bank_data([feb, jan]).to_dict()

    assert forward == backward
    # same day in both files: the later file name wins
    assert forward["daily_balances"] == [{"date": "2025-01-05", "balance": 7000.0}]


def test_bank_fields_of_failed_analysis_is_empty():
    assert stx.bank_fields(stx.BankAnalysisResult.failed("boom")) == {}


def test_bank_fields_project_measured_result():
    fields = stx.bank_fields(stx.analyze_bank_data([_csv_doc(three_month_csv())]))
    assert fields["avg_monthly_revenue"] == 20000
    assert fields["monthly_deposits"] == [20000.0, 20000.0, 20000.0]
    assert fields["has_existing_loans"] is False
    assert "avg_daily_balance" not in fields


@pytest.mark.parametrize("raw,expected", [
    ("01/15/2025", date(2025, 1, 15)),
    ("2025-01-15", date(2025, 1, 15)),
    ("15/01/2025", date(2025, 1, 15)),
    ("1/5/25", date(2025, 1, 5)),
    (20250115, date(2025, 1, 15)),
    ("", None),
])
def test_parse_date(raw, expected):
    assert stx.parse_date(raw) == expected


def test_parse_date_without_year_uses_default():
    assert stx.parse_date("03/04", default_year=2024) == date(2024, 3, 4)


@pytest.mark.parametrize("raw,expected", [
    ("$1,200.50", 1200.5),
    ("(45.00)", -45.0),
    ("45.00-", -45.0),
    ("+12.00", 12.0),
    ("abc", None),
])
def test_parse_amount(raw, expected):
    assert stx.parse_amount(raw) == expected


def test_identify_bank():
    assert stx.identify_bank("chase_jan.pdf", "").name == "chase"
    assert stx.identify_bank("statement.pdf", "WELLS FARGO BUSINESS CHOICE").name == "wells_fargo"
    assert stx.identify_bank(None, "Some Credit Union").name == "generic"


def test_identify_bank_ignores_keyword_inside_other_words():
    text = "First Community Credit Union\n01/05 POS Purchase Grocery 45.00"
    assert stx.identify_bank("statement.pdf", text).name == "generic"
    assert stx.identify_bank("purchases_march.pdf", "").name == "generic"
    assert stx.identify_bank("statement.pdf", "JPMorgan Chase Bank, N.A.").name == "chase"


@pytest.mark.parametrize("desc,expected", [
    ("NSF FEE", True),
    ("Returned Items Fee", True),
    ("OD FEE 03/02", True),
    ("Overdraft charge", True),
    ("DOORDASH FOOD FEE", False),
    ("Online Transfer to Savings", False),
])
def test_nsf_detection_matches_whole_words(desc, expected):
    assert stx._is_nsf(desc) is expected


def test_map_columns_prefers_description_synonym():
    cols = stx.map_columns(["Details", "Posting Date", "Description", "Amount", "Type", "Balance"])
    assert cols["date"] == "Posting Date"
    assert cols["description"] == "Description"
    assert cols["amount"] == "Amount"
    assert cols["balance"] == "Balance"


def test_year_is_taken_from_statement_period_across_new_year():
    text = "\n".join([
        "Statement Period 12/15/2024 to 01/14/2025",
        "12/20 Deposit 100.00",
        "01/05 Deposit 200.00",
    ])
    data = stx.collect_statement(_text_doc(text))
    assert sorted(t.date for t in data.transactions) == [date(2024, 12, 20), date(2025, 1, 5)]
