"""Closed taxonomies for reconciliation exceptions: type, severity, remediation."""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from recon_kernel.utils.hashing import exception_fingerprint


class ExceptionType(str, Enum):
    """Why a record could not be confidently matched."""

    PAYOUT_MISSING_IN_BANK = "PAYOUT_MISSING_IN_BANK"
    AMBIGUOUS_BANK_CANDIDATES = "AMBIGUOUS_BANK_CANDIDATES"
    PAYOUT_MISSING_IN_LEDGER = "PAYOUT_MISSING_IN_LEDGER"
    BANK_TRANSACTION_UNMATCHED = "BANK_TRANSACTION_UNMATCHED"
    LEDGER_TRANSACTION_UNMATCHED = "LEDGER_TRANSACTION_UNMATCHED"
    CASH_DEPOSIT_DETECTED = "CASH_DEPOSIT_DETECTED"
    MULTI_CURRENCY_REVIEW = "MULTI_CURRENCY_REVIEW"


class Severity(str, Enum):
    """Review priority of an exception."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ProposedAction(str, Enum):
    """Remediation suggested to the operator or an automated resolver."""

    CREATE_LEDGER_DEPOSIT = "create_ledger_deposit"
    MARK_INVOICE_PAID = "mark_invoice_paid"
    CREATE_TRANSFER = "create_transfer"
    CREATE_EXPENSE = "create_expense"
    IGNORE = "ignore"


class ExceptionOrigin(str, Enum):
    """Who created the exception.  Only SYSTEM rows are regenerated by sweeps."""

    SYSTEM = "system"
    MANUAL = "manual"


@dataclass(frozen=True)
class ExceptionDraft:
    """Everything needed to persist one exception, before it has an id."""

    type: ExceptionType
    severity: Severity
    entity_refs: dict[str, str]
    evidence: dict[str, Any]
    proposed_action: ProposedAction
    confidence: float

    @property
    def fingerprint(self) -> str:
        return exception_fingerprint(self.type.value, self.entity_refs)
