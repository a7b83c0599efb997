"""
Audit trail read side: entity history, statistics and export.

Responsibility:
    Reads a company's audit chain for operators and auditors.  Export
    renders the chain as JSON or CSV for hand-off to external review.

Architecture position:
    Kernel > Selectors.  Read-only.

Invariants enforced:
    - Export is deterministic: the same chain and range always produce
      byte-identical output.  Events are ordered by seq; JSON keys are
      sorted; the CSV column set is fixed.
    - Export does not write an audit event.  Reading the chain never
      extends it.

Failure modes:
    - UnsupportedExportFormatError for any format other than json/csv.
"""

import csv
import io
import json
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any

from sqlalchemy import func, select

from recon_kernel.exceptions import UnsupportedExportFormatError
from recon_kernel.logging_config import get_logger
from recon_kernel.models.audit_event import AuditEvent
from recon_kernel.selectors.base import BaseSelector
from recon_kernel.utils.hashing import canonicalize_json

logger = get_logger("selectors.audit")

EXPORT_FORMATS = ("json", "csv")

CSV_COLUMNS = (
    "seq",
    "id",
    "created_at",
    "actor_id",
    "actor_type",
    "verb",
    "entity_type",
    "entity_id",
    "payload_hash",
    "prev_hash",
    "hash",
    "trace_id",
    "payload",
)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _range_bound(value: date | datetime | None, end: bool) -> datetime | None:
    """Inclusive bound; a bare date covers the whole day."""
    if value is None:
        return None
    if not isinstance(value, datetime):
        value = datetime.combine(value, time.max if end else time.min)
    return _as_utc(value)


@dataclass(frozen=True)
class AuditEventView:
    """Audit event DTO."""

    id: str
    company_id: str
    seq: int
    actor_id: str
    actor_type: str
    verb: str
    entity_type: str
    entity_id: str
    payload: dict
    payload_hash: str
    prev_hash: str
    hash: str
    trace_id: str | None
    created_at: datetime

    @classmethod
    def from_model(cls, event: AuditEvent) -> "AuditEventView":
        return cls(
            id=str(event.id),
            company_id=event.company_id,
            seq=event.seq,
            actor_id=event.actor_id,
            actor_type=event.actor_type,
            verb=event.verb,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            payload=event.payload,
            payload_hash=event.payload_hash,
            prev_hash=event.prev_hash,
            hash=event.hash,
            trace_id=event.trace_id,
            created_at=_as_utc(event.created_at),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "seq": self.seq,
            "actor_id": self.actor_id,
            "actor_type": self.actor_type,
            "verb": self.verb,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "payload": self.payload,
            "payload_hash": self.payload_hash,
            "prev_hash": self.prev_hash,
            "hash": self.hash,
            "trace_id": self.trace_id,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class AuditStats:
    company_id: str
    total_events: int
    by_verb: dict[str, int]
    by_entity_type: dict[str, int]
    first_event_at: datetime | None
    last_event_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "company_id": self.company_id,
            "total_events": self.total_events,
            "by_verb": self.by_verb,
            "by_entity_type": self.by_entity_type,
            "first_event_at": self.first_event_at.isoformat() if self.first_event_at else None,
            "last_event_at": self.last_event_at.isoformat() if self.last_event_at else None,
        }


class AuditSelector(BaseSelector):
    """Read access to one company's audit chain."""

    def events(
        self,
        company_id: str,
        start: date | datetime | None = None,
        end: date | datetime | None = None,
    ) -> list[AuditEventView]:
        """Events in seq order, optionally limited to an inclusive created_at range."""
        stmt = select(AuditEvent).where(AuditEvent.company_id == company_id)
        lower = _range_bound(start, end=False)
        upper = _range_bound(end, end=True)
        if lower is not None:
            stmt = stmt.where(AuditEvent.created_at >= lower)
        if upper is not None:
            stmt = stmt.where(AuditEvent.created_at <= upper)
        rows = self.session.execute(stmt.order_by(AuditEvent.seq)).scalars().all()
        return [AuditEventView.from_model(row) for row in rows]

    def entity_events(self, company_id: str, entity_type: str, entity_id: str) -> list[AuditEventView]:
        """History of one entity, in chain order."""
        rows = self.session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.company_id == company_id,
                AuditEvent.entity_type == entity_type,
                AuditEvent.entity_id == str(entity_id),
            )
            .order_by(AuditEvent.seq)
        ).scalars().all()
        return [AuditEventView.from_model(row) for row in rows]

    def events_by_trace(self, trace_id: str) -> list[AuditEventView]:
        """Every event written under one run or request trace, oldest first."""
        rows = self.session.execute(
            select(AuditEvent)
            .where(AuditEvent.trace_id == trace_id)
            .order_by(AuditEvent.created_at, AuditEvent.company_id, AuditEvent.seq)
        ).scalars().all()
        return [AuditEventView.from_model(row) for row in rows]

    def audit_stats(self, company_id: str) -> AuditStats:
        total, first_at, last_at = self.session.execute(
            select(
                func.count(AuditEvent.id),
                func.min(AuditEvent.created_at),
                func.max(AuditEvent.created_at),
            ).where(AuditEvent.company_id == company_id)
        ).one()

        by_verb = self.session.execute(
            select(AuditEvent.verb, func.count())
            .where(AuditEvent.company_id == company_id)
            .group_by(AuditEvent.verb)
        ).all()
        by_entity = self.session.execute(
            select(AuditEvent.entity_type, func.count())
            .where(AuditEvent.company_id == company_id)
            .group_by(AuditEvent.entity_type)
        ).all()

        return AuditStats(
            company_id=company_id,
            total_events=total or 0,
            by_verb=dict(sorted(by_verb)),
            by_entity_type=dict(sorted(by_entity)),
            first_event_at=_as_utc(first_at),
            last_event_at=_as_utc(last_at),
        )

    def export_audit_trail(
        self,
        company_id: str,
        fmt: str = "json",
        start: date | datetime | None = None,
        end: date | datetime | None = None,
    ) -> str:
        """
        Render the company's chain (optionally a created_at range of it).

        Raises:
            UnsupportedExportFormatError: If ``fmt`` is not json or csv.
        """
        fmt = (fmt or "").lower()
        if fmt not in EXPORT_FORMATS:
            raise UnsupportedExportFormatError(fmt)

        events = self.events(company_id, start, end)
        lower = _range_bound(start, end=False)
        upper = _range_bound(end, end=True)

        if fmt == "json":
            output = json.dumps(
                {
                    "company_id": company_id,
                    "range": {
                        "start": lower.isoformat() if lower else None,
                        "end": upper.isoformat() if upper else None,
                    },
                    "total_events": len(events),
                    "events": [event.to_dict() for event in events],
                },
                sort_keys=True,
                indent=2,
            )
        else:
            buffer = io.StringIO()
            writer = csv.writer(buffer, lineterminator="\n")
            writer.writerow(CSV_COLUMNS)
            for event in events:
                row = event.to_dict()
                row["payload"] = canonicalize_json(event.payload)
                writer.writerow(
                    "" if row[column] is None else row[column]
                    for column in CSV_COLUMNS
                )
            output = buffer.getvalue()

        logger.info(
            "audit_trail_exported",
            extra={"company_id": company_id, "format": fmt, "event_count": len(events)},
        )
        return output
