"""
Records -- canonical value objects flowing between the matching layers.

Responsibility:
    Defines the single tagged-variant ``NormalizedRecord`` that every raw
    payout, bank transaction and ledger object is decoded into exactly once,
    plus the ephemeral ``MatchCandidate`` and the tolerance/threshold
    parameter objects used by the candidate matcher.

Architecture position:
    Kernel > Domain -- pure value objects, zero I/O.

Invariants enforced:
    - Amounts are integer minor units.  No float ever enters an amount field.
    - All types are frozen; a record is never mutated after normalization.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any


class SourceType(str, Enum):
    """Source system a record came from.  Also the NormalizedRecord tag."""

    PAYOUT = "payout"
    BANK = "bank"
    LEDGER = "ledger"


@dataclass(frozen=True)
class NormalizedRecord:
    """
    Canonical form of one raw source record.

    Derived, never persisted: recomputed from the stored raw dict on demand.
    ``fee_minor_units``/``gross_minor_units`` are only populated for payouts;
    ``object_type``/``external_ref`` only for ledger objects.
    """

    source_type: SourceType
    source_ref: str
    amount_minor_units: int
    currency: str
    date: date
    description: str = ""
    keywords: frozenset[str] = frozenset()
    bucket_keys: frozenset[str] = frozenset()
    fee_minor_units: int = 0
    gross_minor_units: int | None = None
    object_type: str | None = None
    external_ref: str | None = None

    @property
    def ref_key(self) -> str:
        """Deterministic cross-system reference: ``{source_type}:{source_ref}``."""
        return f"{self.source_type.value}:{self.source_ref}"

    @property
    def primary_bucket_key(self) -> str:
        """Bucket key for the record's own date (offset 0)."""
        return f"{self.amount_minor_units}_{self.currency}_{self.date.isoformat()}"

    @property
    def is_credit(self) -> bool:
        return self.amount_minor_units > 0

    def to_evidence(self) -> dict[str, Any]:
        """Deterministic evidence block (no timestamps) for exceptions."""
        return {
            "source_type": self.source_type.value,
            "source_ref": self.source_ref,
            "amount_minor_units": self.amount_minor_units,
            "currency": self.currency,
            "date": self.date.isoformat(),
            "description": self.description,
        }


@dataclass(frozen=True)
class MatchCandidate:
    """A scored target record.  Ephemeral; never persisted directly."""

    record: NormalizedRecord
    confidence: float
    reasons: tuple[str, ...] = ()
    checks: tuple[str, ...] = ()

    @property
    def is_exact(self) -> bool:
        return {"exact_amount", "exact_currency", "exact_date"} <= set(self.checks)

    def to_evidence(self) -> dict[str, Any]:
        return {
            "id": self.record.source_ref,
            "amount_minor_units": self.record.amount_minor_units,
            "date": self.record.date.isoformat(),
            "description": self.record.description,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class ToleranceWindow:
    """
    Amount and date window within which two records are candidates.

    The amount tolerance for a given amount is
    ``max(|amount| * percent / 100, floor)`` in minor units.
    """

    amount_percent: Decimal = Decimal("0.5")
    amount_floor_minor_units: int = 1
    date_days: int = 2

    def amount_tolerance(self, amount_minor_units: int) -> Decimal:
        proportional = Decimal(abs(amount_minor_units)) * self.amount_percent / Decimal(100)
        return max(proportional, Decimal(self.amount_floor_minor_units))

    def to_evidence(self) -> dict[str, Any]:
        return {
            "amount_percent": str(self.amount_percent),
            "amount_floor_minor_units": self.amount_floor_minor_units,
            "date_days": self.date_days,
        }


@dataclass(frozen=True)
class MatchThresholds:
    """Decision thresholds: auto-match at or above ``auto_match``,
    ambiguous in ``[ambiguous, auto_match)``."""

    auto_match: float = 0.95
    ambiguous: float = 0.80

    def __post_init__(self) -> None:
        if not 0.0 <= self.ambiguous <= self.auto_match <= 1.0:
            raise ValueError(
                f"Thresholds must satisfy 0 <= ambiguous <= auto_match <= 1, "
                f"got ambiguous={self.ambiguous}, auto_match={self.auto_match}"
            )


@dataclass(frozen=True)
class LedgerLink:
    """Result of a ledger lookup: the matched ledger object and how it was found."""

    record: NormalizedRecord
    method: str  # "external_ref" or "fuzzy"
    amount_delta_minor_units: int = 0
    day_delta: int = 0
    details: dict[str, Any] = field(default_factory=dict)


SOURCE_REF_FIELDS = ("id", "payout_id", "provider_tx_id", "ledger_id")


def extract_source_ref(raw: dict[str, Any]) -> str | None:
    """First non-empty identifier field of ``raw``, as a string."""
    for name in SOURCE_REF_FIELDS:
        value = raw.get(name)
        if value is not None and value != "":
            return str(value)
    return None
