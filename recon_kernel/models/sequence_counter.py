"""
Module: recon_kernel.models.sequence_counter
Responsibility: Named monotonic counters.  One row per company audit chain
    (``audit_event:{company_id}``); the row is locked while an event is
    appended so that concurrent writers serialize on it.
Architecture position: Kernel > Models.  May import from db/base.py only.
"""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from recon_kernel.db.base import Base


class SequenceCounter(Base):
    """Sequence counter row.  Row-level locking ensures monotonicity."""

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(
        String(120),
        nullable=False,
        unique=True,
    )

    current_value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )
