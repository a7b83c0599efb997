"""
SourceRecordStore -- raw record intake and ledger-object upsert.

Responsibility:
    Receives raw dicts from the ingestion collaborator and stores each one
    exactly once per (company, source_type, source_ref).  Also records
    ledger objects created by the external ledger writer, keyed by their
    deterministic external reference, so a retried write never produces a
    second ledger object.

Architecture position:
    Kernel > Services -- imperative shell.  Called by the ingestion
    boundary, the ledger linker and the exception lifecycle.

Invariants enforced:
    - The raw dict is copied on insert and never mutated afterwards.
    - Re-ingesting a known (source_type, source_ref) is a no-op.
    - Ledger upsert on (company_id, external_ref) returns the existing row
      on conflict.

Failure modes:
    - Records without a usable source reference are rejected and reported
      in IngestResult, not raised.
    - IntegrityError from upsert_ledger_object() only when the conflicting
      row cannot be re-read.
"""

import copy
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.domain.proposals import ProposedLedgerEntry
from recon_kernel.domain.records import SourceType, extract_source_ref
from recon_kernel.logging_config import get_logger
from recon_kernel.models.audit_event import AuditVerb
from recon_kernel.models.source_record import SourceRecord
from recon_kernel.services.auditor_service import AuditorService

logger = get_logger("services.source_record_store")


@dataclass
class IngestResult:
    """Outcome of one upsert_records() call."""

    inserted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    rejected: list[tuple[int, str]] = field(default_factory=list)

    @property
    def inserted_count(self) -> int:
        return len(self.inserted)


class SourceRecordStore:
    """
    Write side of the raw record store.

    Contract:
        Flushes only.  Each insert runs in its own savepoint so one
        conflicting row does not abort the rest of the batch.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def _existing(self, company_id: str, source_type: str, source_ref: str) -> SourceRecord | None:
        return self._session.execute(
            select(SourceRecord).where(
                SourceRecord.company_id == company_id,
                SourceRecord.source_type == source_type,
                SourceRecord.source_ref == source_ref,
            )
        ).scalar_one_or_none()

    def get_by_external_ref(self, company_id: str, external_ref: str) -> SourceRecord | None:
        return self._session.execute(
            select(SourceRecord).where(
                SourceRecord.company_id == company_id,
                SourceRecord.external_ref == external_ref,
            )
        ).scalar_one_or_none()

    def upsert_records(
        self,
        company_id: str,
        source_type: SourceType | str,
        raws: Iterable[dict[str, Any]],
        actor_id: str = "system",
    ) -> IngestResult:
        """
        Insert each raw record once.

        Records without an identifier are rejected (reported by position),
        not raised, so a single bad row cannot block a feed.
        """
        type_value = SourceType(source_type).value
        result = IngestResult()

        for position, raw in enumerate(raws):
            source_ref = extract_source_ref(raw)
            if source_ref is None:
                result.rejected.append((position, "missing source reference"))
                logger.warning(
                    "source_record_rejected",
                    extra={
                        "company_id": company_id,
                        "source_type": type_value,
                        "position": position,
                    },
                )
                continue

            if self._existing(company_id, type_value, source_ref) is not None:
                result.skipped.append(source_ref)
                continue

            stored = copy.deepcopy(raw)
            external_ref = stored.get("external_ref") if type_value == SourceType.LEDGER.value else None
            object_type = stored.get("obj_type") if type_value == SourceType.LEDGER.value else None

            savepoint = self._session.begin_nested()
            try:
                self._session.add(SourceRecord(
                    company_id=company_id,
                    source_type=type_value,
                    source_ref=source_ref,
                    raw=stored,
                    external_ref=external_ref or None,
                    object_type=object_type,
                    created_at=self._clock.now(),
                ))
                self._session.flush()
                savepoint.commit()
            except IntegrityError:
                savepoint.rollback()
                result.skipped.append(source_ref)
                logger.info(
                    "source_record_conflict_skipped",
                    extra={
                        "company_id": company_id,
                        "source_type": type_value,
                        "source_ref": source_ref,
                    },
                )
                continue
            result.inserted.append(source_ref)

        if result.inserted:
            AuditorService(self._session, self._clock).log_event(
                company_id=company_id,
                actor_id=actor_id,
                verb=AuditVerb.RECORD_INGESTED,
                entity_type="source_record_batch",
                entity_id=type_value,
                payload={"source_type": type_value, "inserted": sorted(result.inserted)},
            )

        logger.info(
            "source_records_ingested",
            extra={
                "company_id": company_id,
                "source_type": type_value,
                "inserted": len(result.inserted),
                "skipped": len(result.skipped),
                "rejected": len(result.rejected),
            },
        )
        return result

    def upsert_ledger_object(
        self,
        company_id: str,
        ledger_id: str,
        external_ref: str,
        raw: dict[str, Any],
        object_type: str | None = None,
    ) -> tuple[SourceRecord, bool]:
        """
        Record a ledger object written by the external ledger writer.

        Returns:
            (row, created).  ``created`` is False when a ledger object with
            the same external_ref already existed; the existing row is
            returned unchanged.
        """
        existing = self.get_by_external_ref(company_id, external_ref)
        if existing is not None:
            return existing, False

        stored = copy.deepcopy(raw)
        stored.setdefault("id", ledger_id)
        stored["external_ref"] = external_ref
        if object_type is not None:
            stored.setdefault("obj_type", object_type)

        savepoint = self._session.begin_nested()
        try:
            row = SourceRecord(
                company_id=company_id,
                source_type=SourceType.LEDGER.value,
                source_ref=str(ledger_id),
                raw=stored,
                external_ref=external_ref,
                object_type=object_type,
                created_at=self._clock.now(),
            )
            self._session.add(row)
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            existing = self.get_by_external_ref(company_id, external_ref)
            if existing is None:
                existing = self._existing(company_id, SourceType.LEDGER.value, str(ledger_id))
            if existing is None:
                raise
            return existing, False

        logger.info(
            "ledger_object_recorded",
            extra={
                "company_id": company_id,
                "ledger_id": str(ledger_id),
                "external_ref": external_ref,
                "object_type": object_type,
            },
        )
        return row, True

    def find_ledger_object(self, company_id: str, ledger_ref: str) -> SourceRecord | None:
        """Ledger object by its ledger id (source_ref), or None."""
        return self._existing(company_id, SourceType.LEDGER.value, ledger_ref)

    def record_ledger_write(
        self,
        company_id: str,
        proposal: ProposedLedgerEntry,
        ledger_id: str,
        object_type: str | None,
        actor_id: str,
    ) -> tuple[SourceRecord, bool]:
        """
        Store the ledger object the writer created for ``proposal``.

        The stored raw dict carries the proposal's amount, currency, date
        and memo, so the object normalizes like any ingested ledger record.
        Only a newly created row is audited.
        """
        raw = {
            "id": str(ledger_id),
            "amount_minor_units": proposal.amount_minor_units,
            "currency": proposal.currency,
            "date": proposal.txn_date.isoformat(),
            "memo": proposal.memo,
            "external_ref": proposal.external_ref,
        }
        row, created = self.upsert_ledger_object(
            company_id,
            str(ledger_id),
            proposal.external_ref,
            raw,
            object_type=object_type,
        )
        if created:
            AuditorService(self._session, self._clock).log_event(
                company_id=company_id,
                actor_id=actor_id,
                verb=AuditVerb.LEDGER_OBJECT_RECORDED,
                entity_type="source_record",
                entity_id=row.source_ref,
                payload={
                    "ledger_id": row.source_ref,
                    "external_ref": proposal.external_ref,
                    "object_type": object_type,
                    "amount_minor_units": proposal.amount_minor_units,
                    "currency": proposal.currency,
                },
            )
        return row, created
