"""
Exception queue read side: listing by status and resolution statistics.

Responsibility:
    Gives operators the work queue (open exceptions, newest first) and the
    figures that describe how it is being worked down.

Architecture position:
    Kernel > Selectors.  Read-only.

Invariants enforced:
    - ``list_exceptions`` orders by created_at descending, then id, so two
      calls over the same rows return the same order.
    - Statistics cover every status, including exceptions the sweep later
      replaced; only open system rows are ever deleted, so terminal counts
      never shrink.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select

from recon_kernel.exceptions import ValidationError
from recon_kernel.models.reconciliation_exception import (
    ExceptionStatus,
    ReconciliationException,
)
from recon_kernel.selectors.base import BaseSelector


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class ExceptionView:
    """Reconciliation exception DTO."""

    id: str
    company_id: str
    type: str
    severity: str
    entity_refs: dict
    evidence: dict
    proposed_action: str
    confidence: float
    status: str
    origin: str
    created_at: datetime
    resolved_at: datetime | None
    resolved_by: str | None
    resolution_note: str | None

    @classmethod
    def from_model(cls, row: ReconciliationException) -> "ExceptionView":
        return cls(
            id=str(row.id),
            company_id=row.company_id,
            type=row.type,
            severity=row.severity,
            entity_refs=dict(row.entity_refs or {}),
            evidence=dict(row.evidence or {}),
            proposed_action=row.proposed_action,
            confidence=row.confidence,
            status=row.status,
            origin=row.origin,
            created_at=_utc(row.created_at),
            resolved_at=_utc(row.resolved_at),
            resolved_by=row.resolved_by,
            resolution_note=row.resolution_note,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "type": self.type,
            "severity": self.severity,
            "entity_refs": self.entity_refs,
            "evidence": self.evidence,
            "proposed_action": self.proposed_action,
            "confidence": self.confidence,
            "status": self.status,
            "origin": self.origin,
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
            "resolution_note": self.resolution_note,
        }


@dataclass(frozen=True)
class ExceptionStats:
    company_id: str
    total: int
    open: int
    resolved: int
    ignored: int
    # percentage of exceptions closed (resolved or ignored)
    resolution_rate: float
    # mean created -> resolved time of resolved exceptions; ignored ones excluded
    average_resolution_hours: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "company_id": self.company_id,
            "total": self.total,
            "open": self.open,
            "resolved": self.resolved,
            "ignored": self.ignored,
            "resolution_rate": self.resolution_rate,
            "average_resolution_hours": self.average_resolution_hours,
        }


class ExceptionSelector(BaseSelector):
    """Read access to one company's exceptions."""

    def list_exceptions(
        self,
        company_id: str,
        status: ExceptionStatus | str | None = None,
    ) -> list[ExceptionView]:
        """
        Exceptions of ``company_id``, newest first.

        Raises:
            ValidationError: ``status`` is not open, resolved or ignored.
        """
        stmt = select(ReconciliationException).where(
            ReconciliationException.company_id == company_id
        )
        if status is not None:
            try:
                status = ExceptionStatus(getattr(status, "value", status))
            except ValueError:
                raise ValidationError(
                    f"Unknown exception status {status!r}", field="status"
                ) from None
            stmt = stmt.where(ReconciliationException.status == status.value)

        rows = self.session.execute(
            stmt.order_by(
                ReconciliationException.created_at.desc(),
                ReconciliationException.id,
            )
        ).scalars().all()
        return [ExceptionView.from_model(row) for row in rows]

    def exception_stats(self, company_id: str) -> ExceptionStats:
        by_status = dict(
            self.session.execute(
                select(ReconciliationException.status, func.count())
                .where(ReconciliationException.company_id == company_id)
                .group_by(ReconciliationException.status)
            ).all()
        )
        total = sum(by_status.values())
        open_count = by_status.get(ExceptionStatus.OPEN.value, 0)
        resolved = by_status.get(ExceptionStatus.RESOLVED.value, 0)
        ignored = by_status.get(ExceptionStatus.IGNORED.value, 0)

        spans = self.session.execute(
            select(ReconciliationException.created_at, ReconciliationException.resolved_at).where(
                ReconciliationException.company_id == company_id,
                ReconciliationException.status == ExceptionStatus.RESOLVED.value,
                ReconciliationException.resolved_at.is_not(None),
            )
        ).all()
        hours = [
            (_utc(resolved_at) - _utc(created_at)).total_seconds() / 3600
            for created_at, resolved_at in spans
        ]

        return ExceptionStats(
            company_id=company_id,
            total=total,
            open=open_count,
            resolved=resolved,
            ignored=ignored,
            resolution_rate=round((resolved + ignored) / total * 100, 2) if total else 0.0,
            average_resolution_hours=round(sum(hours) / len(hours), 4) if hours else 0.0,
        )
