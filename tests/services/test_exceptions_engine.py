"""
Tests for the exception sweep.

Covers:
- Classification of every unexplained record
- Idempotence: a second sweep yields the same (type, entity_refs, evidence)
- Operator decisions suppress regeneration
- FX evidence for foreign-currency records
- Per-record normalization failures are collected, not raised
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from recon_kernel.models.audit_event import AuditEvent
from recon_kernel.models.reconciliation_exception import ReconciliationException
from recon_kernel.services.match_service import MatchService
from recon_services.exceptions_engine import ExceptionsEngine
from tests.factories import make_bank_txn, make_ledger_object, make_payout


@pytest.fixture
def engine(session, settings, deterministic_clock):
    return ExceptionsEngine(session, settings, deterministic_clock)


@pytest.fixture
def mixed_feed(ingest):
    ingest("payout", make_payout("po_1", 9710, "2026-03-02", fee=290))
    ingest(
        "bank",
        make_bank_txn("txn_atm", "250.00", "2026-03-04", description="ATM DEPOSIT"),
        make_bank_txn("txn_usd", "100.00", "2026-03-04", description="WIRE IN", currency="USD"),
        make_bank_txn("txn_rent", "-1200.00", "2026-03-01", description="RENT MARCH"),
    )
    ingest("ledger", make_ledger_object("inv_1", "120.00", "2026-03-03", obj_type="Invoice"))


def open_rows(session):
    return session.execute(
        select(ReconciliationException).where(ReconciliationException.status == "open")
    ).scalars().all()


def snapshot(session):
    return sorted(
        (row.type, tuple(sorted(row.entity_refs.items())), repr(sorted(row.evidence.items())))
        for row in open_rows(session)
    )


class TestClassification:
    def test_every_unexplained_record_gets_one_exception(self, engine, mixed_feed, session, company_id):
        result = engine.generate_exceptions(company_id)

        types = {tuple(row.entity_refs.values())[0]: row.type for row in open_rows(session)}
        assert types == {
            "po_1": "PAYOUT_MISSING_IN_BANK",
            "txn_atm": "CASH_DEPOSIT_DETECTED",
            "txn_usd": "MULTI_CURRENCY_REVIEW",
            "txn_rent": "BANK_TRANSACTION_UNMATCHED",
            "inv_1": "LEDGER_TRANSACTION_UNMATCHED",
        }
        assert result.total == 5
        assert result.by_severity == {"critical": 1, "low": 1, "medium": 3}
        assert result.errors == []

    def test_evidence_details(self, engine, mixed_feed, session, company_id):
        engine.generate_exceptions(company_id)
        rows = {row.type: row for row in open_rows(session)}

        cash = rows["CASH_DEPOSIT_DETECTED"]
        assert cash.evidence["proposed_entry"]["lines"][0]["account_ref"] == "acct-cash-sales"
        assert rows["BANK_TRANSACTION_UNMATCHED"].proposed_action == "create_expense"
        invoice = rows["LEDGER_TRANSACTION_UNMATCHED"]
        assert invoice.evidence["object_type"] == "Invoice"
        assert invoice.proposed_action == "mark_invoice_paid"

    def test_bank_matched_payout_missing_in_ledger(self, engine, ingest, session, deterministic_clock, company_id):
        ingest("payout", make_payout("po_1", 9710, "2026-03-02", fee=290))
        ingest("bank", make_bank_txn("txn_1", "97.10", "2026-03-03"))
        MatchService(session, deterministic_clock).create_match(
            company_id=company_id,
            left_type="payout",
            left_ref="po_1",
            right_type="bank",
            right_ref="txn_1",
            strategy="payout_bank_fuzzy",
            confidence=0.985,
            actor_id="system",
        )

        engine.generate_exceptions(company_id)

        (row,) = open_rows(session)
        assert row.type == "PAYOUT_MISSING_IN_LEDGER"
        assert row.entity_refs == {"payout_id": "po_1", "bank_txn_id": "txn_1"}
        proposal = row.evidence["proposed_entry"]
        assert proposal["txn_date"] == "2026-03-03"
        assert [line["amount_minor_units"] for line in proposal["lines"]] == [10000, -290]


class TestIdempotence:
    def test_second_sweep_reproduces_the_same_set(self, engine, mixed_feed, session, company_id):
        engine.generate_exceptions(company_id)
        first = snapshot(session)

        second_result = engine.generate_exceptions(company_id)

        assert second_result.cleared == 5
        assert snapshot(session) == first

    def test_sweep_audited(self, engine, mixed_feed, session, company_id):
        engine.generate_exceptions(company_id)

        verbs = session.execute(select(AuditEvent.verb).order_by(AuditEvent.seq)).scalars().all()
        assert "exceptions_cleared" in verbs
        assert verbs[-1] == "exceptions_generated"
        generated = session.execute(
            select(AuditEvent).where(AuditEvent.verb == "exceptions_generated")
        ).scalar_one()
        assert generated.payload["total"] == 5


class TestSuppression:
    def test_ignored_exception_not_raised_again(self, engine, mixed_feed, session, lifecycle, company_id):
        engine.generate_exceptions(company_id)
        rent = next(r for r in open_rows(session) if r.type == "BANK_TRANSACTION_UNMATCHED")
        lifecycle.transition(rent.id, "ignore", "alice", note="standing order")

        result = engine.generate_exceptions(company_id)

        assert result.suppressed == 1
        assert result.total == 4
        assert "BANK_TRANSACTION_UNMATCHED" not in {r.type for r in open_rows(session)}
        assert session.get(ReconciliationException, rent.id).status == "ignored"


class TestFx:
    def test_rate_lookup_adds_home_amount(self, session, settings, deterministic_clock, mixed_feed, company_id):
        calls = []

        def lookup(from_currency, to_currency, on):
            calls.append((from_currency, to_currency, on.isoformat()))
            return Decimal("1.35")

        ExceptionsEngine(session, settings, deterministic_clock, fx_lookup=lookup).generate_exceptions(company_id)

        row = next(r for r in open_rows(session) if r.type == "MULTI_CURRENCY_REVIEW")
        assert calls == [("USD", "CAD", "2026-03-04")]
        assert row.evidence["fx_rate"] == "1.35"
        assert row.evidence["home_amount_minor_units"] == 13500


class TestErrors:
    def test_unreadable_record_collected(self, engine, ingest, company_id):
        ingest("bank", {"provider_tx_id": "txn_bad", "amount": "10.00", "date": "yesterday"})

        result = engine.generate_exceptions(company_id)

        assert result.total == 0
        assert [(e.stage, e.record_ref, e.code) for e in result.errors] == [
            ("sweep", "txn_bad", "VALIDATION_ERROR")
        ]
