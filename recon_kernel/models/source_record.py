"""
Module: recon_kernel.models.source_record
Responsibility: Raw records delivered by the ingestion collaborator for the
    three source systems (processor payouts, bank transactions, ledger
    objects).  The raw dict is stored verbatim and normalized on read.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One row per (company_id, source_type, source_ref)
      (uq_source_record_ref).
    - One ledger object per (company_id, external_ref)
      (uq_source_record_external_ref).  This is the upsert key the
      ledger linker uses to make ledger writes idempotent.  NULL external
      refs never collide.

Failure modes:
    - IntegrityError on duplicate (company_id, source_type, source_ref) or
      duplicate (company_id, external_ref).
"""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from recon_kernel.db.base import Base


class SourceRecord(Base):
    """
    One raw record from a source system.

    Contract:
        ``raw`` is never mutated after insert.  Derived fields
        (``external_ref``, ``object_type``) are copied out of ``raw`` at
        ingestion so they can be indexed.
    """

    __tablename__ = "source_records"

    __table_args__ = (
        UniqueConstraint(
            "company_id", "source_type", "source_ref",
            name="uq_source_record_ref",
        ),
        UniqueConstraint(
            "company_id", "external_ref",
            name="uq_source_record_external_ref",
        ),
        Index("idx_source_record_pool", "company_id", "source_type"),
    )

    company_id: Mapped[str] = mapped_column(String(64), nullable=False)

    source_type: Mapped[str] = mapped_column(String(20), nullable=False)

    source_ref: Mapped[str] = mapped_column(String(255), nullable=False)

    raw: Mapped[dict] = mapped_column(JSON, nullable=False)

    # Ledger objects only: deterministic reference written by the ledger writer
    external_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Ledger objects only: Deposit, Payment, Invoice, Journal, Transfer, Bill, BillPayment
    object_type: Mapped[str | None] = mapped_column(String(40), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<SourceRecord {self.company_id} {self.source_type}:{self.source_ref}>"
