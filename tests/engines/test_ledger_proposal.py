"""
Tests for ledger-entry proposals.

Covers:
- Payout proposals: revenue at gross plus a negative fee line
- Transaction date taken from the bank counterpart
- Cash deposit proposals
- Unmapped accounts
"""

from datetime import date

from recon_engines.ledger_proposal import (
    CASH_DEPOSIT_PROPOSAL_CONFIDENCE,
    PAYOUT_PROPOSAL_CONFIDENCE,
    LedgerAccounts,
    propose_creation,
)
from recon_engines.normalization import normalize
from tests.factories import make_bank_txn, make_payout

ACCOUNTS = LedgerAccounts(
    bank_account_id="acct-bank",
    revenue_account_id="acct-revenue",
    fees_account_id="acct-fees",
    cash_sales_account_id="acct-cash-sales",
)


class TestPayoutProposal:
    def test_lines_balance_to_net(self):
        payout = normalize(make_payout("po_1", 9710, "2026-03-02", fee=290), "payout")
        proposal = propose_creation(payout, ACCOUNTS)

        assert [(line.role, line.account_ref, line.amount_minor_units) for line in proposal.lines] == [
            ("revenue", "acct-revenue", 10000),
            ("fee", "acct-fees", -290),
        ]
        assert proposal.lines_total_minor_units == 9710
        assert proposal.amount_minor_units == 9710
        assert proposal.external_ref == "payout:po_1"
        assert proposal.deposit_account_ref == "acct-bank"
        assert proposal.confidence == PAYOUT_PROPOSAL_CONFIDENCE

    def test_no_fee_line_without_fee(self):
        payout = normalize(make_payout("po_1", 9710, "2026-03-02"), "payout")
        proposal = propose_creation(payout, ACCOUNTS)

        assert [line.role for line in proposal.lines] == ["revenue"]

    def test_counterpart_date_used(self):
        payout = normalize(make_payout("po_1", 9710, "2026-03-02"), "payout")
        bank = normalize(make_bank_txn("txn_1", "97.10", "2026-03-03"), "bank")
        proposal = propose_creation(payout, ACCOUNTS, counterpart=bank)

        assert proposal.txn_date == date(2026, 3, 3)
        assert "txn_1" in proposal.memo

    def test_unmapped_accounts_are_none(self):
        payout = normalize(make_payout("po_1", 9710, "2026-03-02", fee=290), "payout")
        proposal = propose_creation(payout, LedgerAccounts())

        assert proposal.deposit_account_ref is None
        assert all(line.account_ref is None for line in proposal.lines)

    def test_to_dict_is_json_ready(self):
        payout = normalize(make_payout("po_1", 9710, "2026-03-02", fee=290), "payout")
        data = propose_creation(payout, ACCOUNTS).to_dict()

        assert data["txn_date"] == "2026-03-02"
        assert data["lines"][1]["amount_minor_units"] == -290


class TestCashDepositProposal:
    def test_single_cash_sales_line(self):
        bank = normalize(make_bank_txn("txn_9", "250.00", "2026-03-04", description="BRANCH DEPOSIT"), "bank")
        proposal = propose_creation(bank, ACCOUNTS)

        assert len(proposal.lines) == 1
        line = proposal.lines[0]
        assert line.role == "cash_sales"
        assert line.account_ref == "acct-cash-sales"
        assert line.amount_minor_units == 25000
        assert proposal.external_ref == "bank:txn_9"
        assert proposal.confidence == CASH_DEPOSIT_PROPOSAL_CONFIDENCE == 0.85
