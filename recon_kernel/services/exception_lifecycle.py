"""
ExceptionLifecycleService -- the exception state machine.

Responsibility:
    The only code path that changes a ReconciliationException's status.
    Applies operator decisions (resolve / ignore), individually or in bulk,
    and records every decision in the audit chain.  A resolution that names
    the ledger object a payout was booked to also creates the retroactive
    payout -> ledger Match.

Architecture position:
    Kernel > Services -- imperative shell.

Invariants enforced:
    - Transitions follow VALID_TRANSITIONS (open -> resolved | ignored).
      Terminal exceptions reject every further transition.
    - Each transition (status change, optional Match, audit events) runs in
      one savepoint: it lands completely or not at all.
    - bulk_transition isolates ids from each other; one failing id never
      rolls back another.

Failure modes:
    - ExceptionNotFoundError: unknown exception id.
    - InvalidExceptionTransitionError: transition not allowed from the
      current status.
    - LedgerObjectNotFoundError: ``ledger_ref`` names no known ledger object.
    - DuplicateMatchError: the payout is already linked to a ledger object.
    - ValidationError: unknown action.
    - PersistenceError: the database rejected the write.  The savepoint is
      rolled back and bulk_transition records the id as failed.

Audit relevance:
    Emits ``exception_resolved`` / ``exception_ignored`` with payload
    {from_status, to_status, action, metadata}.  get_history() replays
    those events for one exception.
"""

from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.domain.proposals import ProposedLedgerEntry
from recon_kernel.domain.records import SourceType
from recon_kernel.exceptions import (
    ExceptionNotFoundError,
    LedgerObjectNotFoundError,
    PersistenceError,
    ReconciliationError,
    ValidationError,
)
from recon_kernel.logging_config import get_logger
from recon_kernel.models.audit_event import AuditVerb
from recon_kernel.models.match import MatchStrategy
from recon_kernel.models.reconciliation_exception import (
    ExceptionStatus,
    ReconciliationException,
)
from recon_kernel.selectors.audit_selector import AuditEventView, AuditSelector
from recon_kernel.services.auditor_service import AuditorService
from recon_kernel.services.exception_store import EXCEPTION_ENTITY
from recon_kernel.services.match_service import MatchService
from recon_kernel.services.source_record_store import SourceRecordStore

logger = get_logger("services.exception_lifecycle")

ACTION_TARGETS: dict[str, ExceptionStatus] = {
    "resolve": ExceptionStatus.RESOLVED,
    "ignore": ExceptionStatus.IGNORED,
}

_ACTION_VERBS = {
    ExceptionStatus.RESOLVED: AuditVerb.EXCEPTION_RESOLVED,
    ExceptionStatus.IGNORED: AuditVerb.EXCEPTION_IGNORED,
}


@dataclass(frozen=True)
class TransitionResult:
    exception_id: str
    from_status: str
    to_status: str
    action: str
    match_id: str | None = None


@dataclass(frozen=True)
class BulkTransitionFailure:
    exception_id: str
    code: str
    message: str


@dataclass
class BulkTransitionResult:
    """Per-id outcome of bulk_transition().  Never raised, always returned."""

    succeeded: list[TransitionResult] = field(default_factory=list)
    failed: list[BulkTransitionFailure] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failed)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "succeeded": [r.exception_id for r in self.succeeded],
            "failed": [
                {"exception_id": f.exception_id, "code": f.code, "message": f.message}
                for f in self.failed
            ],
        }


class ExceptionLifecycleService:
    """
    Applies resolve/ignore decisions to exceptions.

    Contract:
        Flushes only; the caller commits.

    Non-goals:
        - Does NOT create exceptions (ExceptionStore, exceptions engine).
        - Does NOT write to the ledger; it only records what the ledger
          writer reports back.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._auditor = AuditorService(session, self._clock)
        self._matches = MatchService(session, self._clock, self._auditor)
        self._records = SourceRecordStore(session, self._clock)

    def _load(self, exception_id) -> ReconciliationException:
        try:
            key = exception_id if isinstance(exception_id, UUID) else UUID(str(exception_id))
        except ValueError:
            raise ExceptionNotFoundError(str(exception_id)) from None
        row = self._session.get(ReconciliationException, key)
        if row is None:
            raise ExceptionNotFoundError(str(exception_id))
        return row

    def transition(
        self,
        exception_id,
        action: str,
        actor_id: str,
        ledger_ref: str | None = None,
        note: str | None = None,
    ) -> TransitionResult:
        """
        Move one exception to resolved or ignored.

        Preconditions:
            ``action`` is "resolve" or "ignore".
        Postconditions:
            Status, resolved_at, resolved_by and resolution_note are set,
            and one audit event records the decision.  With action
            "resolve", a payout exception and a ``ledger_ref``, a Match
            payout -> ledger (strategy exception_resolved) is created too.
        """
        target = ACTION_TARGETS.get(action)
        if target is None:
            raise ValidationError(
                f"Unknown exception action {action!r} (expected resolve or ignore)",
                field="action",
            )

        try:
            with self._session.begin_nested():
                row, from_status, match_id = self._apply(
                    exception_id, action, target, actor_id, ledger_ref, note,
                )
        except ReconciliationError:
            raise
        except SQLAlchemyError as exc:
            logger.error(
                "exception_transition_failed",
                extra={
                    "exception_id": str(exception_id),
                    "action": action,
                    "error": str(exc),
                },
            )
            raise PersistenceError(
                f"Could not {action} exception {exception_id}: {exc}",
                operation="exception_transition",
                record_ref=str(exception_id),
            ) from exc

        logger.info(
            "exception_transitioned",
            extra={
                "company_id": row.company_id,
                "exception_id": str(row.id),
                "from_status": from_status.value,
                "to_status": target.value,
                "actor_id": actor_id,
            },
        )
        return TransitionResult(
            exception_id=str(row.id),
            from_status=from_status.value,
            to_status=target.value,
            action=action,
            match_id=match_id,
        )

    def _apply(
        self,
        exception_id,
        action: str,
        target: ExceptionStatus,
        actor_id: str,
        ledger_ref: str | None,
        note: str | None,
    ) -> tuple[ReconciliationException, ExceptionStatus, str | None]:
        row = self._load(exception_id)
        from_status = row.status_enum
        row.validate_transition(target)

        match_id = None
        payout_ref = (row.entity_refs or {}).get("payout_id")
        if target is ExceptionStatus.RESOLVED and payout_ref and ledger_ref:
            if self._records.find_ledger_object(row.company_id, ledger_ref) is None:
                raise LedgerObjectNotFoundError(row.company_id, ledger_ref)
            match = self._matches.create_match(
                company_id=row.company_id,
                left_type=SourceType.PAYOUT.value,
                left_ref=payout_ref,
                right_type=SourceType.LEDGER.value,
                right_ref=ledger_ref,
                strategy=MatchStrategy.EXCEPTION_RESOLVED,
                confidence=row.confidence,
                actor_id=actor_id,
                evidence={"exception_id": str(row.id)},
            )
            match_id = str(match.id)

        row.status = target.value
        row.resolved_at = self._clock.now()
        row.resolved_by = actor_id
        row.resolution_note = note
        self._session.flush()

        metadata = {"note": note, "ledger_ref": ledger_ref, "match_id": match_id}
        self._auditor.log_event(
            company_id=row.company_id,
            actor_id=actor_id,
            verb=_ACTION_VERBS[target],
            entity_type=EXCEPTION_ENTITY,
            entity_id=str(row.id),
            payload={
                "from_status": from_status.value,
                "to_status": target.value,
                "action": action,
                "metadata": metadata,
            },
        )
        return row, from_status, match_id

    def bulk_transition(
        self,
        exception_ids,
        action: str,
        actor_id: str,
        note: str | None = None,
    ) -> BulkTransitionResult:
        """Apply ``action`` to every id independently; failures are collected."""
        result = BulkTransitionResult()
        for exception_id in exception_ids:
            try:
                result.succeeded.append(
                    self.transition(exception_id, action, actor_id, note=note)
                )
            except ReconciliationError as exc:
                result.failed.append(
                    BulkTransitionFailure(str(exception_id), exc.code, str(exc))
                )

        logger.info(
            "bulk_transition_completed",
            extra={
                "action": action,
                "success_count": result.success_count,
                "failure_count": result.failure_count,
            },
        )
        return result

    def resolve_with_ledger_write(
        self,
        exception_id,
        proposal: ProposedLedgerEntry,
        ledger_id: str,
        object_type: str | None,
        actor_id: str,
        note: str | None = None,
    ) -> TransitionResult:
        """
        Record the ledger object created for ``proposal``, then resolve
        the exception against it.
        """
        row = self._load(exception_id)
        ledger_row, _ = self._records.record_ledger_write(
            row.company_id, proposal, ledger_id, object_type, actor_id,
        )
        return self.transition(
            exception_id, "resolve", actor_id,
            ledger_ref=ledger_row.source_ref, note=note,
        )

    def get_history(self, exception_id) -> list[AuditEventView]:
        row = self._load(exception_id)
        return AuditSelector(self._session).entity_events(
            row.company_id, EXCEPTION_ENTITY, str(row.id),
        )
