"""
Module: recon_kernel.models.audit_event
Responsibility: ORM persistence for the per-company hash-chained audit log.
    Every state-changing reconciliation decision produces exactly one
    AuditEvent row.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: no UPDATE, no DELETE (db/immutability.py).
    - One chain per company ordered by ``seq``; UNIQUE(company_id, seq).
    - hash = sha256(prev_hash + payload_hash); prev_hash is "" for the
      first event of a company.

Failure modes:
    - IntegrityError on duplicate (company_id, seq): a concurrent writer
      bypassed the sequence lock.
    - ImmutabilityViolationError on any UPDATE or DELETE attempt.

Audit relevance:
    This table IS the audit trail.  verify_integrity() replays it; any
    post-hoc edit to a payload is detected at the first edited row.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, BigInteger, DateTime, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from recon_kernel.db.base import Base


class AuditVerb(str, Enum):
    """Auditable reconciliation decisions."""

    RECORD_INGESTED = "record_ingested"
    LEDGER_OBJECT_RECORDED = "ledger_object_recorded"

    MATCH_CREATED = "match_created"

    EXCEPTION_CREATED = "exception_created"
    EXCEPTIONS_CLEARED = "exceptions_cleared"
    EXCEPTIONS_GENERATED = "exceptions_generated"
    EXCEPTION_RESOLVED = "exception_resolved"
    EXCEPTION_IGNORED = "exception_ignored"

    MATCHING_RUN_STARTED = "matching_run_started"
    MATCHING_RUN_COMPLETED = "matching_run_completed"


class ActorType(str, Enum):
    SYSTEM = "system"
    USER = "user"


class AuditEvent(Base):
    """
    One link in a company's audit hash chain.

    Contract:
        Created only by AuditorService.log_event(), which serializes
        appends per company and reads the previous hash from the database.
    """

    __tablename__ = "audit_events"

    __table_args__ = (
        UniqueConstraint("company_id", "seq", name="uq_audit_company_seq"),
        Index("idx_audit_entity", "company_id", "entity_type", "entity_id"),
        Index("idx_audit_created", "company_id", "created_at"),
    )

    company_id: Mapped[str] = mapped_column(String(64), nullable=False)

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)

    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)

    actor_type: Mapped[str] = mapped_column(String(10), nullable=False)

    verb: Mapped[str] = mapped_column(String(50), nullable=False)

    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)

    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)

    payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False, default="")

    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    trace_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.company_id}#{self.seq} {self.verb} {self.entity_type}:{self.entity_id}>"
