"""
ExceptionStore -- the single writer of new ReconciliationException rows.

Responsibility:
    Creates exceptions with their fingerprint and ``exception_created``
    audit event, reusing an open exception that already carries the same
    fingerprint instead of duplicating it.  Also performs the sweep's
    "clear open system exceptions" step.

Architecture position:
    Kernel > Services -- imperative shell.  Status changes are NOT made
    here; they belong to ExceptionLifecycleService.

Invariants enforced:
    - At most one open exception per (company, fingerprint).
    - A fingerprint an operator already resolved or ignored is never
      reopened by a later run.
    - Only open rows with origin=system are ever deleted.
"""

from sqlalchemy import select
from sqlalchemy.orm import Session

from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.domain.exception_types import ExceptionDraft, ExceptionOrigin
from recon_kernel.logging_config import get_logger
from recon_kernel.models.audit_event import AuditVerb
from recon_kernel.models.reconciliation_exception import (
    TERMINAL_STATUSES,
    ExceptionStatus,
    ReconciliationException,
)
from recon_kernel.services.auditor_service import AuditorService

logger = get_logger("services.exception_store")

EXCEPTION_ENTITY = "reconciliation_exception"


class ExceptionStore:
    """Creates and clears exceptions.  Flushes only."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._auditor = auditor or AuditorService(session, self._clock)

    def find_open(self, company_id: str, fingerprint: str) -> ReconciliationException | None:
        return self._session.execute(
            select(ReconciliationException).where(
                ReconciliationException.company_id == company_id,
                ReconciliationException.fingerprint == fingerprint,
                ReconciliationException.status == ExceptionStatus.OPEN.value,
            ).limit(1)
        ).scalar_one_or_none()

    def terminal_fingerprints(self, company_id: str) -> set[str]:
        """Fingerprints of exceptions an operator has already resolved or ignored."""
        rows = self._session.execute(
            select(ReconciliationException.fingerprint).where(
                ReconciliationException.company_id == company_id,
                ReconciliationException.status.in_([s.value for s in TERMINAL_STATUSES]),
            )
        ).scalars()
        return set(rows)

    def find_terminal(self, company_id: str, fingerprint: str) -> ReconciliationException | None:
        return self._session.execute(
            select(ReconciliationException).where(
                ReconciliationException.company_id == company_id,
                ReconciliationException.fingerprint == fingerprint,
                ReconciliationException.status.in_([s.value for s in TERMINAL_STATUSES]),
            ).limit(1)
        ).scalar_one_or_none()

    def record(
        self,
        company_id: str,
        draft: ExceptionDraft,
        actor_id: str,
        origin: ExceptionOrigin = ExceptionOrigin.SYSTEM,
    ) -> tuple[ReconciliationException | None, bool]:
        """
        Persist ``draft`` unless an exception with the same fingerprint is
        already open (reused) or was resolved/ignored by an operator
        (suppressed).

        Returns:
            (row, created).  ``row`` is None when the draft was suppressed.
        """
        fingerprint = draft.fingerprint
        existing = self.find_open(company_id, fingerprint)
        if existing is not None:
            logger.debug(
                "exception_reused",
                extra={"company_id": company_id, "exception_id": str(existing.id)},
            )
            return existing, False

        closed = self.find_terminal(company_id, fingerprint)
        if closed is not None:
            logger.debug(
                "exception_suppressed",
                extra={
                    "company_id": company_id,
                    "exception_id": str(closed.id),
                    "status": closed.status,
                },
            )
            return None, False

        row = ReconciliationException(
            company_id=company_id,
            type=draft.type.value,
            severity=draft.severity.value,
            entity_refs=dict(draft.entity_refs),
            evidence=draft.evidence,
            proposed_action=draft.proposed_action.value,
            confidence=draft.confidence,
            status=ExceptionStatus.OPEN.value,
            origin=origin.value,
            fingerprint=fingerprint,
            created_at=self._clock.now(),
        )
        self._session.add(row)
        self._session.flush()

        self._auditor.log_event(
            company_id=company_id,
            actor_id=actor_id,
            verb=AuditVerb.EXCEPTION_CREATED,
            entity_type=EXCEPTION_ENTITY,
            entity_id=str(row.id),
            payload={
                "type": row.type,
                "severity": row.severity,
                "entity_refs": row.entity_refs,
                "proposed_action": row.proposed_action,
                "confidence": row.confidence,
                "fingerprint": fingerprint,
                "origin": row.origin,
            },
        )
        logger.info(
            "exception_created",
            extra={
                "company_id": company_id,
                "exception_id": str(row.id),
                "exception_type": row.type,
                "severity": row.severity,
            },
        )
        return row, True

    def clear_open_system(self, company_id: str) -> int:
        """Delete every open, system-origin exception of the company."""
        rows = self._session.execute(
            select(ReconciliationException).where(
                ReconciliationException.company_id == company_id,
                ReconciliationException.status == ExceptionStatus.OPEN.value,
                ReconciliationException.origin == ExceptionOrigin.SYSTEM.value,
            )
        ).scalars().all()
        for row in rows:
            self._session.delete(row)
        self._session.flush()
        return len(rows)
