"""
recon_services.ledger_linker -- Find or propose the ledger side of a record.

Responsibility:
    Look up the ledger object that already books a payout or bank deposit
    (by deterministic external reference first, then by a fuzzy amount/date
    search over unmatched ledger objects), build the creation proposal when
    none exists, and record the ledger object a writer collaborator created
    from such a proposal.

Architecture position:
    Services -- imperative shell.  Lookups go through the ``LedgerDirectory``
    protocol; ``DatabaseLedgerDirectory`` reads ``source_records``.  Proposal
    building is delegated to the pure ``recon_engines.ledger_proposal``.

Invariants enforced:
    - The core never writes to the accounting system.  It only proposes and
      records what the collaborator reports back.
    - Fuzzy lookups only consider ledger objects not yet matched, and pick
      the closest by (|amount delta|, |day delta|, source_ref).

Failure modes:
    - RetryExhaustedError -- the directory kept failing transiently.
    - Any non-transient directory error propagates on the first attempt.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import date
from typing import Protocol

from sqlalchemy.orm import Session

from recon_config import CompanySettings
from recon_engines.ledger_proposal import propose_creation as build_proposal
from recon_engines.normalization import normalize, normalize_pool
from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.domain.proposals import ProposedLedgerEntry
from recon_kernel.domain.records import LedgerLink, NormalizedRecord, SourceType
from recon_kernel.exceptions import ValidationError
from recon_kernel.logging_config import get_logger
from recon_kernel.models.source_record import SourceRecord
from recon_kernel.selectors.source_selector import SourceSelector
from recon_kernel.services.auditor_service import SYSTEM_ACTOR_ID
from recon_kernel.services.source_record_store import SourceRecordStore
from recon_kernel.utils.idempotency import generate_external_ref
from recon_kernel.utils.retry import call_with_retry

logger = get_logger("services.ledger_linker")


class LedgerDirectory(Protocol):
    """Read access to a company's ledger objects."""

    def by_external_ref(self, company_id: str, external_ref: str) -> NormalizedRecord | None:
        ...

    def unmatched(self, company_id: str) -> list[NormalizedRecord]:
        ...


class DatabaseLedgerDirectory:
    """LedgerDirectory over the ingested ``source_records`` ledger pool."""

    def __init__(self, session: Session, home_currency: str = "CAD"):
        self._session = session
        self._home_currency = home_currency
        self._store = SourceRecordStore(session)
        self._selector = SourceSelector(session)

    def _normalize(self, row: SourceRecord) -> NormalizedRecord | None:
        try:
            return normalize(
                row.raw,
                SourceType.LEDGER,
                source_ref=row.source_ref,
                home_currency=self._home_currency,
            )
        except ValidationError as exc:
            logger.warning(
                "ledger_object_unreadable",
                extra={"record_ref": row.source_ref, "error": str(exc)},
            )
            return None

    def by_external_ref(self, company_id: str, external_ref: str) -> NormalizedRecord | None:
        row = self._store.get_by_external_ref(company_id, external_ref)
        if row is None:
            return None
        return self._normalize(row)

    def unmatched(self, company_id: str) -> list[NormalizedRecord]:
        matched = self._selector.matched_refs(company_id)
        pool = self._selector.load_pool(company_id, SourceType.LEDGER)
        result = normalize_pool(
            (
                (r.source_ref, r.raw)
                for r in pool
                if not matched.is_matched(SourceType.LEDGER, r.source_ref)
            ),
            SourceType.LEDGER,
            home_currency=self._home_currency,
        )
        return result.records


def _closeness(record: NormalizedRecord, anchor: date, candidate: NormalizedRecord) -> tuple:
    return (
        abs(record.amount_minor_units - candidate.amount_minor_units),
        abs((candidate.date - anchor).days),
        candidate.source_ref,
    )


class LedgerLinker:
    """
    Links payouts and deposits to ledger objects.

    Contract:
        ``find_existing_link`` and ``propose_creation`` never write.
        ``record_ledger_write`` upserts one ledger object and flushes.

    Non-goals:
        Talking to the accounting system directly; the writer collaborator
        executes proposals outside this package.
    """

    def __init__(
        self,
        session: Session,
        settings: CompanySettings,
        clock: Clock | None = None,
        directory: LedgerDirectory | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session = session
        self._settings = settings
        self._clock = clock or SystemClock()
        self._directory = directory or DatabaseLedgerDirectory(session, settings.home_currency)
        self._sleep = sleep
        self._store = SourceRecordStore(session, self._clock)

    def find_existing_link(
        self,
        company_id: str,
        record: NormalizedRecord,
        counterpart: NormalizedRecord | None = None,
    ) -> LedgerLink | None:
        """
        Ledger object that already books ``record``, or None.

        The fuzzy date window is centred on the counterpart's date when a
        counterpart (the bank transaction) is given.
        """
        policy = self._settings.retry_policy()
        external_ref = generate_external_ref(record.source_type.value, record.source_ref)

        hit = call_with_retry(
            "ledger_directory.by_external_ref",
            self._directory.by_external_ref,
            company_id,
            external_ref,
            policy=policy,
            sleep=self._sleep,
        )
        if hit is not None:
            logger.info(
                "ledger_link_found",
                extra={
                    "company_id": company_id,
                    "record_ref": record.source_ref,
                    "ledger_ref": hit.source_ref,
                    "method": "external_ref",
                },
            )
            return LedgerLink(
                record=hit,
                method="external_ref",
                amount_delta_minor_units=abs(record.amount_minor_units - hit.amount_minor_units),
                day_delta=abs((hit.date - record.date).days),
                details={"external_ref": external_ref},
            )

        candidates = call_with_retry(
            "ledger_directory.unmatched",
            self._directory.unmatched,
            company_id,
            policy=policy,
            sleep=self._sleep,
        )
        tolerance = self._settings.tolerance()
        amount_tolerance = tolerance.amount_tolerance(record.amount_minor_units)
        anchor = counterpart.date if counterpart is not None else record.date

        in_window = [
            c for c in candidates
            if c.currency == record.currency
            and abs(record.amount_minor_units - c.amount_minor_units) <= amount_tolerance
            and abs((c.date - anchor).days) <= tolerance.date_days
        ]
        if not in_window:
            logger.info(
                "ledger_link_missing",
                extra={"company_id": company_id, "record_ref": record.source_ref},
            )
            return None

        best = min(in_window, key=lambda c: _closeness(record, anchor, c))
        amount_delta, day_delta, _ = _closeness(record, anchor, best)
        logger.info(
            "ledger_link_found",
            extra={
                "company_id": company_id,
                "record_ref": record.source_ref,
                "ledger_ref": best.source_ref,
                "method": "fuzzy",
            },
        )
        return LedgerLink(
            record=best,
            method="fuzzy",
            amount_delta_minor_units=amount_delta,
            day_delta=day_delta,
            details={
                "amount_delta_minor_units": amount_delta,
                "day_delta": day_delta,
                "anchor_date": anchor.isoformat(),
                "candidate_count": len(in_window),
            },
        )

    def propose_creation(
        self,
        record: NormalizedRecord,
        counterpart: NormalizedRecord | None = None,
    ) -> ProposedLedgerEntry:
        return build_proposal(record, self._settings.ledger_accounts(), counterpart=counterpart)

    def record_ledger_write(
        self,
        company_id: str,
        proposal: ProposedLedgerEntry,
        ledger_id: str,
        object_type: str | None = None,
        actor_id: str = SYSTEM_ACTOR_ID,
    ) -> SourceRecord:
        """Upsert the ledger object created for ``proposal``.  Idempotent."""
        row, created = self._store.record_ledger_write(
            company_id, proposal, ledger_id, object_type, actor_id
        )
        logger.info(
            "ledger_write_recorded",
            extra={
                "company_id": company_id,
                "ledger_ref": row.source_ref,
                "external_ref": proposal.external_ref,
                "created": created,
            },
        )
        return row
