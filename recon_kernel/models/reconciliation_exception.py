"""
Module: recon_kernel.models.reconciliation_exception
Responsibility: ORM persistence for records that could not be confidently
    matched and need remediation or human review.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value enums only.

Invariants enforced:
    - Lifecycle follows VALID_TRANSITIONS: open -> resolved | ignored.
      Terminal states have no outgoing transitions.
    - Terminal rows are frozen: no UPDATE, no DELETE (db/immutability.py).
    - Open rows may be deleted, which is how the exceptions engine clears
      machine-generated exceptions before regenerating them.

Failure modes:
    - InvalidExceptionTransitionError from validate_transition().
    - ImmutabilityViolationError on modifying a terminal row.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, DateTime, Float, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from recon_kernel.db.base import Base
from recon_kernel.exceptions import InvalidExceptionTransitionError


class ExceptionStatus(str, Enum):
    """
    Status of a reconciliation exception.

    State machine:
        OPEN -> RESOLVED | IGNORED
        RESOLVED: terminal
        IGNORED: terminal
    """

    OPEN = "open"
    RESOLVED = "resolved"
    IGNORED = "ignored"


VALID_TRANSITIONS: dict[ExceptionStatus, frozenset[ExceptionStatus]] = {
    ExceptionStatus.OPEN: frozenset({ExceptionStatus.RESOLVED, ExceptionStatus.IGNORED}),
    # terminal states allow no transitions
    ExceptionStatus.RESOLVED: frozenset(),
    ExceptionStatus.IGNORED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in VALID_TRANSITIONS.items() if not targets
)


class ReconciliationException(Base):
    """
    An unmatched or ambiguous record with a proposed remediation.

    Contract:
        Created by the matcher, the coordinator's ledger stage, or the
        exceptions engine sweep.  ``status`` changes only through the
        exception lifecycle service.

    Guarantees:
        - ``fingerprint`` is sha256(type + entity_refs); sweeps use it to
          avoid duplicating an open exception and to respect terminal
          decisions already taken for the same record.
        - ``evidence`` contains no timestamps, so regenerated exceptions
          are identical to the ones they replace.
    """

    __tablename__ = "reconciliation_exceptions"

    __table_args__ = (
        Index("idx_exception_company_status", "company_id", "status"),
        Index("idx_exception_fingerprint", "company_id", "fingerprint"),
        Index("idx_exception_type", "company_id", "type"),
    )

    company_id: Mapped[str] = mapped_column(String(64), nullable=False)

    type: Mapped[str] = mapped_column(String(40), nullable=False)

    severity: Mapped[str] = mapped_column(String(10), nullable=False)

    entity_refs: Mapped[dict] = mapped_column(JSON, nullable=False)

    evidence: Mapped[dict] = mapped_column(JSON, nullable=False)

    proposed_action: Mapped[str] = mapped_column(String(40), nullable=False)

    confidence: Mapped[float] = mapped_column(Float, nullable=False)

    status: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default=ExceptionStatus.OPEN.value,
    )

    origin: Mapped[str] = mapped_column(String(10), nullable=False)

    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def status_enum(self) -> ExceptionStatus:
        """Return status as ExceptionStatus enum (normalizes raw DB strings)."""
        if isinstance(self.status, ExceptionStatus):
            return self.status
        return ExceptionStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status_enum in TERMINAL_STATUSES

    def validate_transition(self, target: ExceptionStatus) -> None:
        """Raise InvalidExceptionTransitionError unless ``target`` is reachable."""
        allowed = VALID_TRANSITIONS.get(self.status_enum, frozenset())
        if target not in allowed:
            raise InvalidExceptionTransitionError(
                exception_id=str(self.id),
                from_status=self.status_enum.value,
                to_status=target.value,
            )

    def __repr__(self) -> str:
        return f"<ReconciliationException {self.type} {self.status} {self.id}>"
