"""
MatchService -- the single writer of Match rows.

Responsibility:
    Persists a link between two source records and appends the matching
    ``match_created`` audit event.  Used by the payout/bank matcher, the
    coordinator's ledger stage and the exception lifecycle (retroactive
    matches).

Architecture position:
    Kernel > Services -- imperative shell.

Invariants enforced:
    - A (ref, type) sits on at most one Match per counterpart source.
      Checked before insert; the unique constraints are the backstop.
    - The Match and its audit event are flushed together.  Callers wrap
      the call in a savepoint so both land or neither does.

Failure modes:
    - DuplicateMatchError when either side is already matched against the
      counterpart source, or the pair already exists.
"""

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.exceptions import DuplicateMatchError
from recon_kernel.logging_config import get_logger
from recon_kernel.models.audit_event import AuditVerb
from recon_kernel.models.match import Match, MatchStrategy
from recon_kernel.services.auditor_service import AuditorService

logger = get_logger("services.match")

MATCH_ENTITY = "match"


class MatchService:
    """Creates matches.  Flushes only."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._auditor = auditor or AuditorService(session, self._clock)

    def find_conflict(
        self,
        company_id: str,
        left_type: str,
        left_ref: str,
        right_type: str,
        right_ref: str,
    ) -> Match | None:
        """Existing match that would violate one of the uniqueness rules."""
        return self._session.execute(
            select(Match).where(
                Match.company_id == company_id,
                or_(
                    (Match.left_type == left_type)
                    & (Match.left_ref == left_ref)
                    & (Match.right_type == right_type)
                    & (Match.right_ref == right_ref),
                    (Match.left_type == left_type)
                    & (Match.left_ref == left_ref)
                    & (Match.right_type == right_type),
                    (Match.right_type == right_type)
                    & (Match.right_ref == right_ref)
                    & (Match.left_type == left_type),
                ),
            ).limit(1)
        ).scalar_one_or_none()

    def create_match(
        self,
        company_id: str,
        left_type: str,
        left_ref: str,
        right_type: str,
        right_ref: str,
        strategy: MatchStrategy | str,
        confidence: float,
        actor_id: str,
        evidence: dict | None = None,
    ) -> Match:
        """
        Insert a Match and audit it.

        Raises:
            DuplicateMatchError: If either side is already linked to the
                counterpart source.
        """
        strategy_value = strategy.value if isinstance(strategy, MatchStrategy) else strategy

        if self.find_conflict(company_id, left_type, left_ref, right_type, right_ref) is not None:
            raise DuplicateMatchError(company_id, left_ref, right_ref)

        match = Match(
            company_id=company_id,
            left_ref=left_ref,
            left_type=left_type,
            right_ref=right_ref,
            right_type=right_type,
            strategy=strategy_value,
            confidence=confidence,
            created_by=actor_id,
            created_at=self._clock.now(),
        )
        self._session.add(match)
        try:
            self._session.flush()
        except IntegrityError as exc:
            raise DuplicateMatchError(company_id, left_ref, right_ref) from exc

        payload = {
            "match_id": str(match.id),
            "left_type": left_type,
            "left_ref": left_ref,
            "right_type": right_type,
            "right_ref": right_ref,
            "strategy": strategy_value,
            "confidence": confidence,
        }
        if evidence:
            payload["evidence"] = evidence
        self._auditor.log_event(
            company_id=company_id,
            actor_id=actor_id,
            verb=AuditVerb.MATCH_CREATED,
            entity_type=MATCH_ENTITY,
            entity_id=str(match.id),
            payload=payload,
        )

        logger.info(
            "match_created",
            extra={
                "company_id": company_id,
                "match_id": str(match.id),
                "left_ref": left_ref,
                "right_ref": right_ref,
                "strategy": strategy_value,
                "confidence": confidence,
            },
        )
        return match
