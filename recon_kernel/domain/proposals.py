"""
Proposals -- ledger entries the core suggests but never writes.

A ``ProposedLedgerEntry`` is handed to the external ledger-writer
collaborator.  Its ``external_ref`` is the same deterministic reference the
ledger linker looks up first, so a proposal executed twice is found (and
not re-proposed) on the next run.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any


@dataclass(frozen=True)
class ProposedLine:
    """One line of a proposed deposit.  ``account_ref`` may be an unmapped placeholder (None)."""

    role: str  # "revenue", "fee", "cash_sales"
    account_ref: str | None
    amount_minor_units: int
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "account_ref": self.account_ref,
            "amount_minor_units": self.amount_minor_units,
            "description": self.description,
        }


@dataclass(frozen=True)
class ProposedLedgerEntry:
    """Structured ledger-entry creation proposal."""

    external_ref: str
    entry_type: str
    source_type: str
    source_ref: str
    amount_minor_units: int
    currency: str
    txn_date: date
    memo: str
    deposit_account_ref: str | None
    lines: tuple[ProposedLine, ...]
    confidence: float

    @property
    def lines_total_minor_units(self) -> int:
        return sum(line.amount_minor_units for line in self.lines)

    def to_dict(self) -> dict[str, Any]:
        """Deterministic, JSON-ready representation used as exception evidence."""
        return {
            "external_ref": self.external_ref,
            "entry_type": self.entry_type,
            "source_type": self.source_type,
            "source_ref": self.source_ref,
            "amount_minor_units": self.amount_minor_units,
            "currency": self.currency,
            "txn_date": self.txn_date.isoformat(),
            "memo": self.memo,
            "deposit_account_ref": self.deposit_account_ref,
            "lines": [line.to_dict() for line in self.lines],
            "confidence": self.confidence,
        }
