"""
Tests for record normalization.

Covers:
- Minor/major unit amount parsing per currency exponent
- Date formats (ISO date, ISO datetime, epoch seconds)
- Keyword extraction and bucket keys
- Per-record failures and pool ordering
"""

from datetime import date

import pytest

from recon_engines.normalization import (
    bucket_keys,
    extract_keywords,
    normalize,
    normalize_pool,
    parse_amount,
    parse_date,
)
from recon_kernel.domain.records import SourceType
from recon_kernel.exceptions import ValidationError
from tests.factories import make_bank_txn, make_ledger_object, make_payout


class TestAmounts:
    """Amounts always end up as integer minor units."""

    def test_minor_unit_field_taken_verbatim(self):
        assert parse_amount({"amount_net": 9710}, "CAD") == 9710

    def test_major_units_scaled_by_currency(self):
        assert parse_amount({"amount": "97.10"}, "CAD") == 9710
        assert parse_amount({"amount": "1500"}, "JPY") == 1500
        assert parse_amount({"amount": "1.234"}, "KWD") == 1234

    def test_float_major_amount_goes_through_decimal(self):
        assert parse_amount({"amount": 0.1 + 0.2}, "USD") == 30

    def test_currency_symbols_and_separators_stripped(self):
        assert parse_amount({"amount": "$1,234.56"}, "CAD") == 123456

    def test_negative_debit(self):
        assert parse_amount({"amount": "-42.00"}, "CAD") == -4200

    def test_half_up_rounding(self):
        assert parse_amount({"amount": "10.005"}, "CAD") == 1001

    def test_minor_fields_win_over_major(self):
        assert parse_amount({"amount_cents": 500, "amount": "9.99"}, "CAD") == 500

    def test_unparseable_amount_is_zero_and_logged(self, captured_logs):
        assert parse_amount({"amount": "n/a"}, "CAD", source_ref="txn_9") == 0
        warnings = [r for r in captured_logs() if r["message"] == "normalization_amount_unparseable"]
        assert warnings and warnings[0]["record_ref"] == "txn_9"

    def test_fractional_minor_units_are_unparseable(self):
        assert parse_amount({"amount_minor_units": "12.5"}, "CAD") == 0


class TestDates:
    def test_iso_date(self):
        assert parse_date("2026-03-02") == date(2026, 3, 2)

    def test_iso_datetime_with_z(self):
        assert parse_date("2026-03-02T23:30:00Z") == date(2026, 3, 2)

    def test_epoch_seconds(self):
        assert parse_date(1767225600) == date(2026, 1, 1)
        assert parse_date("1767225600") == date(2026, 1, 1)

    def test_date_object_passthrough(self):
        assert parse_date(date(2026, 3, 2)) == date(2026, 3, 2)

    def test_garbage_raises_validation_error(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_date("next tuesday", "posted_date", "txn_1")
        assert exc_info.value.field == "posted_date"
        assert exc_info.value.record_ref == "txn_1"


class TestKeywordsAndBuckets:
    def test_keywords_match_whole_words(self):
        assert extract_keywords("ATM DEPOSIT BRANCH 12") == frozenset({"ATM", "DEPOSIT"})
        assert "STRIPE" not in extract_keywords("STRIPES AND DOTS")

    def test_empty_description_has_no_keywords(self):
        assert extract_keywords("") == frozenset()

    def test_bucket_keys_cover_five_days(self):
        keys = bucket_keys(9710, "CAD", date(2026, 3, 2))
        assert len(keys) == 5
        assert "9710_CAD_2026-02-28" in keys
        assert "9710_CAD_2026-03-04" in keys


class TestNormalize:
    def test_payout(self):
        record = normalize(make_payout("po_1", 9710, "2026-03-02", fee=290), SourceType.PAYOUT)

        assert record.source_type is SourceType.PAYOUT
        assert record.source_ref == "po_1"
        assert record.amount_minor_units == 9710
        assert record.currency == "CAD"
        assert record.date == date(2026, 3, 2)
        assert record.fee_minor_units == 290
        assert record.gross_minor_units == 10000
        assert "STRIPE" in record.keywords
        assert record.primary_bucket_key == "9710_CAD_2026-03-02"
        assert record.ref_key == "payout:po_1"

    def test_bank_transaction(self):
        record = normalize(make_bank_txn("txn_1", "97.10", "2026-03-03"), "bank")

        assert record.source_ref == "txn_1"
        assert record.amount_minor_units == 9710
        assert record.description == "STRIPE TRANSFER"
        assert record.is_credit

    def test_ledger_object_carries_external_ref(self):
        raw = make_ledger_object("L-1", "97.10", "2026-03-03", external_ref="payout:po_1")
        record = normalize(raw, SourceType.LEDGER)

        assert record.external_ref == "payout:po_1"
        assert record.object_type == "Deposit"

    def test_missing_currency_defaults_to_home(self):
        raw = {"id": "x", "amount": "5.00", "date": "2026-03-02"}
        assert normalize(raw, "bank", home_currency="USD").currency == "USD"

    def test_raw_dict_is_not_mutated(self):
        raw = make_payout("po_1", 9710, "2026-03-02")
        before = dict(raw)
        normalize(raw, "payout")
        assert raw == before

    def test_malformed_currency_rejected(self):
        raw = make_bank_txn("txn_1", "1.00", "2026-03-02", currency="C$")
        with pytest.raises(ValidationError) as exc_info:
            normalize(raw, "bank")
        assert exc_info.value.field == "currency"

    def test_missing_date_rejected(self):
        with pytest.raises(ValidationError):
            normalize({"id": "x", "amount": "1.00"}, "bank")

    def test_missing_reference_rejected(self):
        with pytest.raises(ValidationError):
            normalize({"amount": "1.00", "date": "2026-03-02"}, "bank")

    def test_emits_engine_trace(self, captured_logs):
        normalize(make_payout("po_1", 100, "2026-03-02"), "payout")
        normalize(make_payout("po_2", 100, "2026-03-02"), "payout")

        traces = [r for r in captured_logs() if r["message"] == "engine_invoked" and r["engine_name"] == "normalization"]
        assert len(traces) == 2
        assert traces[0]["input_fingerprint"] != traces[1]["input_fingerprint"]


class TestNormalizePool:
    def test_sorted_by_date_then_ref_with_errors_collected(self):
        items = [
            ("txn_b", make_bank_txn("txn_b", "1.00", "2026-03-02")),
            ("txn_bad", {"amount": "1.00", "date": "garbage"}),
            ("txn_a", make_bank_txn("txn_a", "1.00", "2026-03-02")),
            ("txn_0", make_bank_txn("txn_0", "1.00", "2026-03-01")),
        ]
        result = normalize_pool(items, SourceType.BANK)

        assert [r.source_ref for r in result.records] == ["txn_0", "txn_a", "txn_b"]
        assert [ref for ref, _ in result.errors] == ["txn_bad"]
        assert result.errors[0][1].code == "VALIDATION_ERROR"
