"""Tests for the engine invocation tracer."""

from datetime import date
from decimal import Decimal

import pytest

from recon_engines.tracer import TRACE_EVENT, input_fingerprint, traced_engine
from recon_kernel.logging_config import LogContext


def traces(captured_logs):
    return [r for r in captured_logs() if r["message"] == TRACE_EVENT]


@traced_engine("scaler", "2.1", fingerprint_fields=("amount", "factor"))
def scale(amount, factor=2, *, note=None):
    return amount * factor


class TestInputFingerprint:
    def test_key_order_irrelevant(self):
        a = input_fingerprint({"raw": {"id": "po_1", "amount": "1.00"}}, ("raw",))
        b = input_fingerprint({"raw": {"amount": "1.00", "id": "po_1"}}, ("raw",))
        assert a == b
        assert len(a) == 16

    def test_only_named_fields_count(self):
        base = input_fingerprint({"source_type": "bank", "home_currency": "CAD"}, ("source_type",))
        other = input_fingerprint({"source_type": "bank", "home_currency": "USD"}, ("source_type",))
        assert base == other

    def test_domain_types(self):
        args = {"posted": date(2026, 3, 2), "amount": Decimal("97.10")}
        assert input_fingerprint(args, ("posted", "amount")) == input_fingerprint(dict(args), ("amount", "posted"))

    def test_no_fields(self):
        assert input_fingerprint({"x": 1}, ()) == ""


class TestTracedEngine:
    def test_positional_and_keyword_calls_fingerprint_alike(self, captured_logs):
        assert scale(5, 3) == 15
        assert scale(amount=5, factor=3) == 15

        first, second = traces(captured_logs)
        assert first["input_fingerprint"] == second["input_fingerprint"]
        assert first["engine_name"] == "scaler"
        assert first["engine_version"] == "2.1"
        assert first["outcome"] == "ok"

    def test_defaults_are_part_of_the_fingerprint(self, captured_logs):
        scale(5)
        scale(5, 2)

        first, second = traces(captured_logs)
        assert first["input_fingerprint"] == second["input_fingerprint"]

    def test_failed_call_is_traced(self, captured_logs):
        @traced_engine("broken", "1.0")
        def broken():
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            broken()

        (trace,) = traces(captured_logs)
        assert trace["outcome"] == "error"
        assert trace["input_fingerprint"] == ""
        assert trace["duration_ms"] >= 0

    def test_trace_carries_bound_run_context(self, captured_logs):
        with LogContext.bind(run_id="run_1", record_ref="payout:po_1"):
            scale(1)

        (trace,) = traces(captured_logs)
        assert (trace["run_id"], trace["record_ref"]) == ("run_1", "payout:po_1")

    def test_unknown_fingerprint_field_rejected(self):
        with pytest.raises(TypeError, match="source_ref"):
            traced_engine("bad", "1.0", fingerprint_fields=("source_ref",))(lambda raw: raw)

    def test_preserves_metadata(self):
        assert scale.__name__ == "scale"
