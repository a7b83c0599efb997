"""
Configuration Schema (``recon_config.schema``).

Responsibility
--------------
Frozen dataclasses describing the effective per-company reconciliation
settings.  Instances are produced only by ``recon_config.loader`` and are
never mutated afterwards.

Architecture position
---------------------
**Config layer** -- pure data.  Translates itself into the kernel and
engine parameter objects (tolerance window, thresholds, retry policy,
ledger accounts) so that no other layer reads raw configuration.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from recon_engines.ledger_proposal import LedgerAccounts
from recon_kernel.domain.records import MatchThresholds, ToleranceWindow
from recon_kernel.utils.retry import RetryPolicy


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 5.0


@dataclass(frozen=True)
class CompanySettings:
    """Effective settings for one company: defaults plus its override block."""

    company_id: str
    home_currency: str = "CAD"

    amount_tolerance_percent: Decimal = Decimal("0.5")
    amount_tolerance_floor_minor_units: int = 1
    date_tolerance_days: int = 2

    auto_match_threshold: float = 0.95
    ambiguous_threshold: float = 0.80

    bank_account_id: str | None = None
    revenue_account_id: str | None = None
    fees_account_id: str | None = None
    cash_sales_account_id: str | None = None
    undeposited_funds_account_id: str | None = None
    bank_charges_account_id: str | None = None

    max_workers: int = 4
    retry: RetrySettings = RetrySettings()

    checksum: str = ""

    def tolerance(self) -> ToleranceWindow:
        return ToleranceWindow(
            amount_percent=self.amount_tolerance_percent,
            amount_floor_minor_units=self.amount_tolerance_floor_minor_units,
            date_days=self.date_tolerance_days,
        )

    def thresholds(self) -> MatchThresholds:
        return MatchThresholds(
            auto_match=self.auto_match_threshold,
            ambiguous=self.ambiguous_threshold,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry.max_attempts,
            base_delay=self.retry.base_delay_seconds,
            max_delay=self.retry.max_delay_seconds,
        )

    def ledger_accounts(self) -> LedgerAccounts:
        return LedgerAccounts(
            bank_account_id=self.bank_account_id,
            revenue_account_id=self.revenue_account_id,
            fees_account_id=self.fees_account_id,
            cash_sales_account_id=self.cash_sales_account_id,
            undeposited_funds_account_id=self.undeposited_funds_account_id,
            bank_charges_account_id=self.bank_charges_account_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "company_id": self.company_id,
            "home_currency": self.home_currency,
            "amount_tolerance_percent": str(self.amount_tolerance_percent),
            "amount_tolerance_floor_minor_units": self.amount_tolerance_floor_minor_units,
            "date_tolerance_days": self.date_tolerance_days,
            "auto_match_threshold": self.auto_match_threshold,
            "ambiguous_threshold": self.ambiguous_threshold,
            "bank_account_id": self.bank_account_id,
            "revenue_account_id": self.revenue_account_id,
            "fees_account_id": self.fees_account_id,
            "cash_sales_account_id": self.cash_sales_account_id,
            "undeposited_funds_account_id": self.undeposited_funds_account_id,
            "bank_charges_account_id": self.bank_charges_account_id,
            "max_workers": self.max_workers,
            "retry": {
                "max_attempts": self.retry.max_attempts,
                "base_delay_seconds": self.retry.base_delay_seconds,
                "max_delay_seconds": self.retry.max_delay_seconds,
            },
        }
