"""Result types shared by the matcher, the sweep and the coordinator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class RunError:
    """One record that failed; the batch carried on without it."""

    stage: str
    record_ref: str | None
    code: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "record_ref": self.record_ref,
            "code": self.code,
            "message": self.message,
        }


class RunStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class ExceptionSweepResult:
    company_id: str
    cleared: int = 0
    created: list[str] = field(default_factory=list)
    reused: list[str] = field(default_factory=list)
    suppressed: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    by_severity: dict[str, int] = field(default_factory=dict)
    errors: list[RunError] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.created) + len(self.reused)

    def to_dict(self) -> dict[str, Any]:
        return {
            "company_id": self.company_id,
            "cleared": self.cleared,
            "created": len(self.created),
            "reused": len(self.reused),
            "suppressed": self.suppressed,
            "by_type": dict(sorted(self.by_type.items())),
            "by_severity": dict(sorted(self.by_severity.items())),
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class RunResults:
    payout_bank_matches: int = 0
    payout_bank_exceptions: int = 0
    ledger_matches: int = 0
    ledger_exceptions: int = 0
    sweep_exceptions: int = 0
    # stage 1 and 2 decisions an operator already resolved or ignored
    suppressed: int = 0

    @property
    def total_matches(self) -> int:
        return self.payout_bank_matches + self.ledger_matches

    @property
    def total_exceptions(self) -> int:
        """Open system exceptions after the run; the sweep regenerates all of them."""
        return self.sweep_exceptions

    def to_dict(self) -> dict[str, int]:
        return {
            "payout_bank_matches": self.payout_bank_matches,
            "payout_bank_exceptions": self.payout_bank_exceptions,
            "ledger_matches": self.ledger_matches,
            "ledger_exceptions": self.ledger_exceptions,
            "sweep_exceptions": self.sweep_exceptions,
            "suppressed": self.suppressed,
            "total_matches": self.total_matches,
            "total_exceptions": self.total_exceptions,
        }


@dataclass
class MatchingReport:
    """Operator-facing outcome of one run_matching() call."""

    company_id: str
    run_id: str
    started_at: datetime
    status: RunStatus = RunStatus.COMPLETED
    results: RunResults = field(default_factory=RunResults)
    errors: list[RunError] = field(default_factory=list)
    completed_at: datetime | None = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "company_id": self.company_id,
            "run_id": self.run_id,
            "status": self.status.value,
            "results": self.results.to_dict(),
            "errors": [e.to_dict() for e in self.errors],
            "duration_ms": self.duration_ms,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
