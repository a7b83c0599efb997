"""
Tests for PayoutBankMatcher.

Covers:
- Exact match creates a Match with its evidence (Scenario A)
- Two identical bank transactions raise AMBIGUOUS_BANK_CANDIDATES (Scenario B)
- No bank transaction raises PAYOUT_MISSING_IN_BANK (Scenario C)
- Consumed bank transactions are not offered twice in one run
- Conflicting matches surface as DuplicateMatchError
- Bank and ledger refs with the same value do not conflict
"""

from datetime import date
from uuid import UUID

import pytest
from sqlalchemy import select

from recon_engines.candidate_matcher import CandidatePool, DecisionKind
from recon_engines.normalization import normalize
from recon_kernel.exceptions import DuplicateMatchError
from recon_kernel.models.audit_event import AuditEvent
from recon_kernel.models.match import Match
from recon_kernel.models.reconciliation_exception import ReconciliationException
from recon_kernel.services.match_service import MatchService
from recon_services.payout_bank_matcher import PayoutBankMatcher
from tests.factories import make_bank_txn, make_payout

DAY = date(2026, 3, 2)


def payout(ref="po_1", net=9710):
    return normalize(make_payout(ref, net, DAY), "payout")


def bank(ref, amount="97.10", on=DAY):
    return normalize(make_bank_txn(ref, amount, on), "bank")


@pytest.fixture
def matcher(session, deterministic_clock):
    return PayoutBankMatcher(session, deterministic_clock)


class TestAutoMatch:
    def test_exact_match_persisted(self, matcher, session, company_id, settings):
        consumed: set[str] = set()
        outcome = matcher.match(company_id, payout(), CandidatePool([bank("txn_1")]), settings, consumed)

        assert outcome.matched
        assert outcome.decision.kind is DecisionKind.AUTO_MATCH
        assert consumed == {"txn_1"}

        match = session.execute(select(Match)).scalar_one()
        assert (match.left_type, match.left_ref) == ("payout", "po_1")
        assert (match.right_type, match.right_ref) == ("bank", "txn_1")
        assert match.strategy == "payout_bank_exact"
        assert match.confidence == 1.0

        event = session.execute(
            select(AuditEvent).where(AuditEvent.verb == "match_created")
        ).scalar_one()
        assert event.payload["evidence"]["checks"] == ["exact_amount", "exact_currency", "exact_date"]

    def test_consumed_target_not_offered_again(self, matcher, session, company_id, settings):
        pool = CandidatePool([bank("txn_1")])
        consumed: set[str] = set()
        matcher.match(company_id, payout("po_1"), pool, settings, consumed)
        second = matcher.match(company_id, payout("po_2"), pool, settings, consumed)

        assert not second.matched
        assert second.decision.kind is DecisionKind.MISSING
        row = session.get(ReconciliationException, UUID(second.exception_id))
        assert row.type == "PAYOUT_MISSING_IN_BANK"
        assert row.entity_refs == {"payout_id": "po_2"}


class TestExceptions:
    def test_two_identical_candidates_are_ambiguous(self, matcher, session, company_id, settings):
        pool = CandidatePool([bank("txn_1"), bank("txn_2")])
        consumed: set[str] = set()
        outcome = matcher.match(company_id, payout(), pool, settings, consumed)

        assert not outcome.matched
        assert consumed == set()
        assert session.execute(select(Match)).first() is None

        row = session.get(ReconciliationException, UUID(outcome.exception_id))
        assert row.type == "AMBIGUOUS_BANK_CANDIDATES"
        assert row.severity == "high"
        assert row.status == "open"
        assert [c["id"] for c in row.evidence["candidates"]] == ["txn_1", "txn_2"]

    def test_missing_bank_transaction(self, matcher, session, company_id, settings):
        outcome = matcher.match(company_id, payout(), CandidatePool(), settings, set())

        row = session.get(ReconciliationException, UUID(outcome.exception_id))
        assert outcome.exception_created
        assert row.type == "PAYOUT_MISSING_IN_BANK"
        assert row.severity == "critical"
        assert row.proposed_action == "create_ledger_deposit"
        assert row.evidence["search_window"]["date_to"] == "2026-03-04"

    def test_same_exception_reused_while_open(self, matcher, company_id, settings):
        first = matcher.match(company_id, payout(), CandidatePool(), settings, set())
        second = matcher.match(company_id, payout(), CandidatePool(), settings, set())

        assert second.exception_id == first.exception_id
        assert not second.exception_created

    @pytest.mark.parametrize("action", ["ignore", "resolve"])
    def test_closed_exception_not_reopened(self, matcher, lifecycle, session, company_id, settings, action):
        pool = CandidatePool([bank("txn_1"), bank("txn_2")])
        first = matcher.match(company_id, payout(), pool, settings, set())
        lifecycle.transition(first.exception_id, action, "alice")
        events_before = session.execute(select(AuditEvent)).scalars().all()

        again = matcher.match(company_id, payout(), pool, settings, set())

        assert again.suppressed
        assert again.exception_id is None
        assert not again.exception_created
        rows = session.execute(select(ReconciliationException)).scalars().all()
        assert [r.status for r in rows] == ["resolved" if action == "resolve" else "ignored"]
        assert len(session.execute(select(AuditEvent)).scalars().all()) == len(events_before)


class TestConflicts:
    def test_already_matched_bank_raises(self, matcher, session, deterministic_clock, company_id, settings):
        MatchService(session, deterministic_clock).create_match(
            company_id=company_id,
            left_type="payout",
            left_ref="po_0",
            right_type="bank",
            right_ref="txn_1",
            strategy="payout_bank_exact",
            confidence=1.0,
            actor_id="system",
        )
        consumed: set[str] = set()
        with pytest.raises(DuplicateMatchError):
            matcher.match(company_id, payout(), CandidatePool([bank("txn_1")]), settings, consumed)

        assert consumed == set()
        assert len(session.execute(select(Match)).scalars().all()) == 1

    def test_colliding_bank_and_ledger_refs_are_not_conflicts(self, session, deterministic_clock, company_id):
        service = MatchService(session, deterministic_clock)
        for right_type, strategy in (("bank", "payout_bank_exact"), ("ledger", "payout_ledger_auto")):
            service.create_match(
                company_id=company_id,
                left_type="payout",
                left_ref="po_1",
                right_type=right_type,
                right_ref="1001",
                strategy=strategy,
                confidence=1.0,
                actor_id="system",
            )

        assert service.find_conflict(company_id, "payout", "po_2", "ledger", "1001") is not None
        assert service.find_conflict(company_id, "payout", "po_2", "bank", "1002") is None
        assert len(session.execute(select(Match)).scalars().all()) == 2
