"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Provides strictly increasing sequence numbers for each company's audit
    chain.  Uses a dedicated counter table with row-level locking
    (``SELECT ... FOR UPDATE``) so that two writers appending to the same
    company's chain serialize on the counter row and each observes the
    true latest event.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by AuditorService.

Invariants enforced:
    - The locked counter row is the sole source of truth for the next value.
      The aggregate-max-plus-one pattern is not used.
    - The increment is transactional: a rolled-back append returns its value.

Failure modes:
    - IntegrityError on a concurrent first-use race for the same counter,
      handled via savepoint rollback and a locked re-read.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from recon_kernel.logging_config import get_logger
from recon_kernel.models.sequence_counter import SequenceCounter

logger = get_logger("services.sequence")


def audit_sequence_name(company_id: str) -> str:
    return f"audit_event:{company_id}"


class SequenceService:
    """
    Service for generating transactional sequence numbers.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(self, session: Session):
        self._session = session

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Lock the counter row (creating it on first use), increment it and
        return the new value.  Always > 0.
        """
        counter = self._locked_counter(sequence_name)

        if counter is None:
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                counter = self._locked_counter(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """Current value without incrementing, or None if the sequence is unused."""
        return self._session.execute(
            select(SequenceCounter.current_value)
            .where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()
