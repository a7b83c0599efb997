"""
Module: recon_kernel.models.match
Responsibility: ORM persistence for links between two records from different
    sources that represent the same economic event.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - UNIQUE(company_id, left_type, left_ref, right_type, right_ref)
      (uq_match_pair): the upsert key for matches.  Refs are only unique
      within their source type, so the types are part of the key.
    - UNIQUE(company_id, left_type, left_ref, right_type) and
      UNIQUE(company_id, right_type, right_ref, left_type): a (ref, type)
      sits on at most one Match per counterpart source, so re-runs can
      never double-match a record.  These constraints are the backstop;
      the coordinator's "already matched" exclusion is the happy path.
    - Append-only: no UPDATE, no DELETE (db/immutability.py).

Failure modes:
    - IntegrityError on any of the uniqueness constraints (surfaced by
      services as DuplicateMatchError).
    - ImmutabilityViolationError on update/delete.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Float, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from recon_kernel.db.base import Base


class MatchStrategy(str, Enum):
    """Which pass produced a match."""

    PAYOUT_BANK_EXACT = "payout_bank_exact"
    PAYOUT_BANK_FUZZY = "payout_bank_fuzzy"
    PAYOUT_LEDGER_AUTO = "payout_ledger_auto"
    EXCEPTION_RESOLVED = "exception_resolved"


AUTOMATED_STRATEGIES = frozenset({
    MatchStrategy.PAYOUT_BANK_EXACT.value,
    MatchStrategy.PAYOUT_BANK_FUZZY.value,
    MatchStrategy.PAYOUT_LEDGER_AUTO.value,
})


class Match(Base):
    """
    Persisted link between two source records.

    Contract:
        Created by the payout/bank matcher, the ledger stage of the
        coordinator, or retroactively by the exception lifecycle.  Never
        mutated after creation; never deleted.
    """

    __tablename__ = "matches"

    __table_args__ = (
        UniqueConstraint(
            "company_id", "left_type", "left_ref", "right_type", "right_ref",
            name="uq_match_pair",
        ),
        UniqueConstraint(
            "company_id", "left_type", "left_ref", "right_type",
            name="uq_match_left_side",
        ),
        UniqueConstraint(
            "company_id", "right_type", "right_ref", "left_type",
            name="uq_match_right_side",
        ),
        Index("idx_match_company_strategy", "company_id", "strategy"),
    )

    company_id: Mapped[str] = mapped_column(String(64), nullable=False)

    left_ref: Mapped[str] = mapped_column(String(255), nullable=False)

    left_type: Mapped[str] = mapped_column(String(20), nullable=False)

    right_ref: Mapped[str] = mapped_column(String(255), nullable=False)

    right_type: Mapped[str] = mapped_column(String(20), nullable=False)

    strategy: Mapped[str] = mapped_column(String(50), nullable=False)

    confidence: Mapped[float] = mapped_column(Float, nullable=False)

    created_by: Mapped[str] = mapped_column(String(64), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    @property
    def is_automated(self) -> bool:
        return self.strategy in AUTOMATED_STRATEGIES

    def __repr__(self) -> str:
        return (
            f"<Match {self.left_type}:{self.left_ref} -> "
            f"{self.right_type}:{self.right_ref} ({self.strategy})>"
        )
