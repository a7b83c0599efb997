"""
recon_services.payout_bank_matcher -- Persist one payout/bank decision.

Responsibility:
    Run the candidate matcher for a single payout against the bank pool and
    persist the outcome: a Match for a unique auto-match candidate, an
    AMBIGUOUS_BANK_CANDIDATES exception for several plausible ones, a
    PAYOUT_MISSING_IN_BANK exception when nothing qualifies.

Architecture position:
    Services -- imperative shell over recon_engines.candidate_matcher and the
    kernel MatchService / ExceptionStore.  Flushes only; the coordinator's
    caller owns the commit.

Invariants enforced:
    - A bank transaction consumed earlier in the same run is never offered
      again (``consumed`` set, updated only after a successful match).
    - Each decision is written inside its own savepoint: a failed write
      leaves no partial rows and does not mark the bank record consumed.
    - An ambiguous or missing decision that an operator already resolved or
      ignored writes nothing (``MatchOutcome.suppressed``).

Failure modes:
    - DuplicateMatchError -- either side already matched (race or re-run).
    - PersistenceError -- any other database failure while writing.

Audit relevance:
    The Match or exception carries the decision evidence (confidence,
    reasons and checks, or the top candidates / search window).
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from recon_config import CompanySettings
from recon_engines.candidate_matcher import (
    CandidatePool,
    CandidateSearch,
    DecisionKind,
    MatchDecision,
    decide_search,
    search_candidates,
)
from recon_engines.exception_rules import payout_bank_draft
from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.domain.records import NormalizedRecord, SourceType
from recon_kernel.exceptions import PersistenceError
from recon_kernel.logging_config import get_logger
from recon_kernel.services.auditor_service import SYSTEM_ACTOR_ID, AuditorService
from recon_kernel.services.exception_store import ExceptionStore
from recon_kernel.services.match_service import MatchService

logger = get_logger("services.payout_bank_matcher")

PASS_NAME = "payout_bank"


@dataclass(frozen=True)
class MatchOutcome:
    """What was persisted for one payout."""

    decision: MatchDecision
    match_id: str | None = None
    exception_id: str | None = None
    exception_created: bool = False

    @property
    def matched(self) -> bool:
        return self.match_id is not None

    @property
    def suppressed(self) -> bool:
        """No row written: an operator already closed this exception."""
        return self.match_id is None and self.exception_id is None


class PayoutBankMatcher:
    """
    Decide and persist the bank counterpart of one payout.

    Contract:
        ``match()`` never commits.  Callers run payouts in (date, source_ref)
        order and pass the same ``consumed`` set for the whole run.

    Non-goals:
        Splitting or merging payouts across several bank transactions.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        auditor = auditor or AuditorService(session, self._clock)
        self._matches = MatchService(session, self._clock, auditor)
        self._exceptions = ExceptionStore(session, self._clock, auditor)

    def match(
        self,
        company_id: str,
        source: NormalizedRecord,
        pool: CandidatePool,
        settings: CompanySettings,
        consumed: set[str],
        actor_id: str = SYSTEM_ACTOR_ID,
        search: CandidateSearch | None = None,
    ) -> MatchOutcome:
        """
        Match ``source`` against ``pool`` and persist the decision.

        ``search`` may carry a candidate search already computed for
        ``source`` (the coordinator scores payouts on a thread pool); it is
        filtered against ``consumed`` before deciding.

        Raises:
            DuplicateMatchError: The match conflicts with an existing one.
            PersistenceError: Any other write failure.
        """
        thresholds = settings.thresholds()
        if search is None:
            search = search_candidates(source, pool, settings.tolerance(), thresholds)
        decision = decide_search(search.excluding(consumed), thresholds, pass_name=PASS_NAME)

        try:
            with self._session.begin_nested():
                outcome = self._persist(company_id, source, decision, actor_id)
        except PersistenceError:
            raise
        except SQLAlchemyError as exc:
            logger.error(
                "payout_bank_write_failed",
                extra={
                    "company_id": company_id,
                    "record_ref": source.source_ref,
                    "decision": decision.kind.value,
                    "error": str(exc),
                },
            )
            raise PersistenceError(
                f"Could not persist {decision.kind.value} decision for payout {source.source_ref}: {exc}",
                operation="payout_bank_match",
                record_ref=source.source_ref,
            ) from exc

        if outcome.matched:
            consumed.add(decision.candidate.record.source_ref)

        logger.info(
            "payout_bank_decided",
            extra={
                "company_id": company_id,
                "record_ref": source.source_ref,
                "decision": decision.kind.value,
                "confidence": decision.confidence,
                "strategy": decision.strategy,
            },
        )
        return outcome

    def _persist(
        self,
        company_id: str,
        source: NormalizedRecord,
        decision: MatchDecision,
        actor_id: str,
    ) -> MatchOutcome:
        if decision.kind is DecisionKind.AUTO_MATCH:
            target = decision.candidate.record
            match = self._matches.create_match(
                company_id=company_id,
                left_type=SourceType.PAYOUT.value,
                left_ref=source.source_ref,
                right_type=SourceType.BANK.value,
                right_ref=target.source_ref,
                strategy=decision.strategy,
                confidence=decision.confidence,
                actor_id=actor_id,
                evidence=decision.evidence,
            )
            return MatchOutcome(decision=decision, match_id=str(match.id))

        row, created = self._exceptions.record(
            company_id, payout_bank_draft(source, decision), actor_id
        )
        return MatchOutcome(
            decision=decision,
            exception_id=str(row.id) if row is not None else None,
            exception_created=created,
        )
