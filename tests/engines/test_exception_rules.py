"""
Tests for exception classification tables.

Covers:
- Severity / confidence / proposed action per type
- Classification of unmatched bank and ledger records
- Payout drafts built from matcher decisions
- FX evidence for foreign-currency records
- Fingerprints independent of evidence
"""

from datetime import date
from decimal import Decimal

import pytest

from recon_engines.candidate_matcher import (
    CandidatePool,
    DecisionKind,
    decide_search,
    search_candidates,
)
from recon_engines.exception_rules import (
    SEVERITY,
    build_draft,
    classify_unmatched_bank,
    classify_unmatched_ledger,
    entity_refs_for,
    is_cash_deposit,
    multi_currency_evidence,
    payout_bank_draft,
    payout_missing_in_ledger_draft,
    proposed_action,
)
from recon_engines.ledger_proposal import LedgerAccounts, propose_creation
from recon_engines.normalization import normalize
from recon_kernel.domain.exception_types import ExceptionType, ProposedAction, Severity
from recon_kernel.domain.records import MatchThresholds, ToleranceWindow
from tests.factories import make_bank_txn, make_ledger_object, make_payout

TOLERANCE = ToleranceWindow()
THRESHOLDS = MatchThresholds()


def bank(ref="txn_1", amount="97.10", description="STRIPE TRANSFER", currency="CAD"):
    return normalize(make_bank_txn(ref, amount, "2026-03-02", description=description, currency=currency), "bank")


def payout(ref="po_1"):
    return normalize(make_payout(ref, 9710, "2026-03-02"), "payout")


class TestTables:
    def test_every_type_has_a_severity(self):
        assert set(SEVERITY) == set(ExceptionType)
        assert SEVERITY[ExceptionType.PAYOUT_MISSING_IN_BANK] is Severity.CRITICAL
        assert SEVERITY[ExceptionType.LEDGER_TRANSACTION_UNMATCHED] is Severity.LOW

    def test_bank_credit_and_debit_actions(self):
        assert proposed_action(ExceptionType.BANK_TRANSACTION_UNMATCHED, bank()) is ProposedAction.CREATE_LEDGER_DEPOSIT
        debit = bank(amount="-42.00", description="OFFICE SUPPLIES")
        assert proposed_action(ExceptionType.BANK_TRANSACTION_UNMATCHED, debit) is ProposedAction.CREATE_EXPENSE

    def test_invoice_ledger_object_marked_paid(self):
        invoice = normalize(make_ledger_object("inv_1", "120.00", "2026-03-02", obj_type="Invoice"), "ledger")
        assert proposed_action(ExceptionType.LEDGER_TRANSACTION_UNMATCHED, invoice) is ProposedAction.MARK_INVOICE_PAID


class TestClassification:
    @pytest.mark.parametrize("description", ["ATM DEPOSIT", "Branch deposit 0042", "CASH"])
    def test_cash_deposit(self, description):
        record = bank(description=description)
        assert is_cash_deposit(record)
        assert classify_unmatched_bank(record, "CAD") is ExceptionType.CASH_DEPOSIT_DETECTED

    def test_debit_is_never_a_cash_deposit(self):
        assert not is_cash_deposit(bank(amount="-50.00", description="ATM WITHDRAWAL"))

    def test_foreign_currency_takes_precedence(self):
        record = bank(description="ATM DEPOSIT", currency="USD")
        assert classify_unmatched_bank(record, "CAD") is ExceptionType.MULTI_CURRENCY_REVIEW

    def test_plain_unmatched(self):
        assert classify_unmatched_bank(bank(), "CAD") is ExceptionType.BANK_TRANSACTION_UNMATCHED
        ledger = normalize(make_ledger_object("dep_1", "10.00", "2026-03-02"), "ledger")
        assert classify_unmatched_ledger(ledger, "CAD") is ExceptionType.LEDGER_TRANSACTION_UNMATCHED


class TestPayoutDrafts:
    def test_missing_in_bank_carries_search_window(self):
        search = search_candidates(payout(), CandidatePool(), TOLERANCE, THRESHOLDS)
        draft = payout_bank_draft(payout(), decide_search(search, THRESHOLDS), window=search.window)

        assert draft.type is ExceptionType.PAYOUT_MISSING_IN_BANK
        assert draft.entity_refs == {"payout_id": "po_1"}
        assert draft.evidence["search_window"]["date_from"] == "2026-02-28"
        assert draft.evidence["best_confidence"] == 0.0
        assert draft.confidence == 0.90
        assert draft.proposed_action is ProposedAction.CREATE_LEDGER_DEPOSIT

    def test_ambiguous_takes_best_confidence(self):
        search = search_candidates(
            payout(), CandidatePool([bank("txn_1"), bank("txn_2")]), TOLERANCE, THRESHOLDS
        )
        decision = decide_search(search, THRESHOLDS)
        assert decision.kind is DecisionKind.AMBIGUOUS

        draft = payout_bank_draft(payout(), decision)
        assert draft.type is ExceptionType.AMBIGUOUS_BANK_CANDIDATES
        assert draft.severity is Severity.HIGH
        assert draft.confidence == 1.0
        assert [c["id"] for c in draft.evidence["candidates"]] == ["txn_1", "txn_2"]

    def test_missing_in_ledger_refs_both_sides(self):
        po, txn = payout(), bank()
        proposal = propose_creation(po, LedgerAccounts(), counterpart=txn)
        draft = payout_missing_in_ledger_draft(po, txn, proposal)

        assert draft.entity_refs == {"payout_id": "po_1", "bank_txn_id": "txn_1"}
        assert draft.evidence["bank_date"] == "2026-03-02"
        assert draft.evidence["proposed_entry"]["external_ref"] == "payout:po_1"
        assert draft.confidence == 0.95


class TestEvidence:
    def test_fx_evidence_with_rate(self):
        record = bank(amount="100.00", currency="USD")
        extra = multi_currency_evidence(record, "CAD", lambda frm, to, on: Decimal("1.3512"))

        assert extra == {
            "home_currency": "CAD",
            "fx_rate": "1.3512",
            "home_amount_minor_units": 13512,
        }

    def test_fx_evidence_without_lookup(self):
        assert multi_currency_evidence(bank(currency="USD"), "CAD") == {"home_currency": "CAD"}

    def test_fingerprint_ignores_evidence(self):
        record = bank()
        refs = entity_refs_for(record)
        first = build_draft(ExceptionType.BANK_TRANSACTION_UNMATCHED, record, refs)
        second = build_draft(
            ExceptionType.BANK_TRANSACTION_UNMATCHED, record, refs, extra_evidence={"note": "changed"}
        )
        assert first.fingerprint == second.fingerprint
        assert first.evidence != second.evidence

    def test_evidence_has_no_timestamps(self):
        draft = build_draft(ExceptionType.BANK_TRANSACTION_UNMATCHED, bank(), {"bank_txn_id": "txn_1"})
        assert set(draft.evidence) == {"amount_minor_units", "currency", "date", "description", "source_type"}
        assert draft.evidence["date"] == date(2026, 3, 2).isoformat()
