"""
recon_engines.exception_rules -- Exception classification tables.

Responsibility:
    The single source of severity, proposed action and confidence for each
    exception type, plus the classification of records nobody matched
    (foreign currency, cash deposit, plain unmatched) and the evidence
    block every exception carries.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - One table per attribute.  No other module assigns severity.
    - Evidence is deterministic: no timestamps, sorted candidate lists,
      ISO dates only.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import date
from decimal import Decimal
from typing import Any

from recon_engines.candidate_matcher import DecisionKind, MatchDecision
from recon_kernel.domain.currency import CurrencyRegistry
from recon_kernel.domain.exception_types import (
    ExceptionDraft,
    ExceptionType,
    ProposedAction,
    Severity,
)
from recon_kernel.domain.proposals import ProposedLedgerEntry
from recon_kernel.domain.records import NormalizedRecord, SourceType

FxRateLookup = Callable[[str, str, date], Decimal | None]

SEVERITY: dict[ExceptionType, Severity] = {
    ExceptionType.PAYOUT_MISSING_IN_BANK: Severity.CRITICAL,
    ExceptionType.AMBIGUOUS_BANK_CANDIDATES: Severity.HIGH,
    ExceptionType.PAYOUT_MISSING_IN_LEDGER: Severity.HIGH,
    ExceptionType.BANK_TRANSACTION_UNMATCHED: Severity.MEDIUM,
    ExceptionType.CASH_DEPOSIT_DETECTED: Severity.MEDIUM,
    ExceptionType.MULTI_CURRENCY_REVIEW: Severity.MEDIUM,
    ExceptionType.LEDGER_TRANSACTION_UNMATCHED: Severity.LOW,
}

# None: taken from the best candidate's confidence
CONFIDENCE: dict[ExceptionType, float | None] = {
    ExceptionType.PAYOUT_MISSING_IN_BANK: 0.90,
    ExceptionType.AMBIGUOUS_BANK_CANDIDATES: None,
    ExceptionType.PAYOUT_MISSING_IN_LEDGER: 0.95,
    ExceptionType.BANK_TRANSACTION_UNMATCHED: 0.70,
    ExceptionType.CASH_DEPOSIT_DETECTED: 0.85,
    ExceptionType.MULTI_CURRENCY_REVIEW: 0.90,
    ExceptionType.LEDGER_TRANSACTION_UNMATCHED: 0.60,
}

CASH_DEPOSIT_PATTERN = re.compile(r"\b(?:cash|branch|atm|deposit)\b", re.IGNORECASE)

ENTITY_REF_KEYS: dict[SourceType, str] = {
    SourceType.PAYOUT: "payout_id",
    SourceType.BANK: "bank_txn_id",
    SourceType.LEDGER: "ledger_id",
}


def entity_refs_for(*records: NormalizedRecord) -> dict[str, str]:
    return {ENTITY_REF_KEYS[r.source_type]: r.source_ref for r in records}


def proposed_action(exception_type: ExceptionType, record: NormalizedRecord | None = None) -> ProposedAction:
    if exception_type in (
        ExceptionType.PAYOUT_MISSING_IN_BANK,
        ExceptionType.PAYOUT_MISSING_IN_LEDGER,
        ExceptionType.CASH_DEPOSIT_DETECTED,
    ):
        return ProposedAction.CREATE_LEDGER_DEPOSIT
    if exception_type is ExceptionType.BANK_TRANSACTION_UNMATCHED:
        if record is not None and record.is_credit:
            return ProposedAction.CREATE_LEDGER_DEPOSIT
        return ProposedAction.CREATE_EXPENSE
    if exception_type is ExceptionType.LEDGER_TRANSACTION_UNMATCHED:
        if record is not None and (record.object_type or "").lower() == "invoice":
            return ProposedAction.MARK_INVOICE_PAID
        return ProposedAction.IGNORE
    return ProposedAction.IGNORE


def confidence_for(exception_type: ExceptionType, best_confidence: float | None = None) -> float:
    fixed = CONFIDENCE[exception_type]
    if fixed is not None:
        return fixed
    return round(best_confidence or 0.0, 4)


def is_cash_deposit(record: NormalizedRecord) -> bool:
    """Bank credit whose description points at a branch, ATM or cash deposit."""
    if not record.is_credit:
        return False
    return bool(CASH_DEPOSIT_PATTERN.search(record.description)) or "ATM" in record.keywords


def classify_unmatched_bank(record: NormalizedRecord, home_currency: str) -> ExceptionType:
    if record.currency != home_currency:
        return ExceptionType.MULTI_CURRENCY_REVIEW
    if is_cash_deposit(record):
        return ExceptionType.CASH_DEPOSIT_DETECTED
    return ExceptionType.BANK_TRANSACTION_UNMATCHED


def classify_unmatched_ledger(record: NormalizedRecord, home_currency: str) -> ExceptionType:
    if record.currency != home_currency:
        return ExceptionType.MULTI_CURRENCY_REVIEW
    return ExceptionType.LEDGER_TRANSACTION_UNMATCHED


def base_evidence(record: NormalizedRecord) -> dict[str, Any]:
    return {
        "amount_minor_units": record.amount_minor_units,
        "currency": record.currency,
        "date": record.date.isoformat(),
        "description": record.description,
        "source_type": record.source_type.value,
    }


def convert_to_home(record: NormalizedRecord, home_currency: str, rate: Decimal) -> int:
    """Amount of ``record`` in home-currency minor units at ``rate``."""
    major = CurrencyRegistry.to_major_units(record.amount_minor_units, record.currency)
    return CurrencyRegistry.to_minor_units(major * rate, home_currency)


def multi_currency_evidence(
    record: NormalizedRecord,
    home_currency: str,
    fx_lookup: FxRateLookup | None = None,
) -> dict[str, Any]:
    extra: dict[str, Any] = {"home_currency": home_currency}
    if fx_lookup is not None:
        rate = fx_lookup(record.currency, home_currency, record.date)
        if rate is not None:
            rate = Decimal(str(rate))
            extra["fx_rate"] = str(rate)
            extra["home_amount_minor_units"] = convert_to_home(record, home_currency, rate)
    return extra


def build_draft(
    exception_type: ExceptionType,
    record: NormalizedRecord,
    entity_refs: dict[str, str],
    extra_evidence: dict[str, Any] | None = None,
    best_confidence: float | None = None,
    proposal: ProposedLedgerEntry | None = None,
) -> ExceptionDraft:
    """Assemble an exception from the tables above."""
    evidence = base_evidence(record)
    if extra_evidence:
        evidence.update(extra_evidence)
    if proposal is not None:
        evidence["proposed_entry"] = proposal.to_dict()
    return ExceptionDraft(
        type=exception_type,
        severity=SEVERITY[exception_type],
        entity_refs=entity_refs,
        evidence=evidence,
        proposed_action=proposed_action(exception_type, record),
        confidence=confidence_for(exception_type, best_confidence),
    )


def payout_bank_draft(
    payout: NormalizedRecord,
    decision: MatchDecision,
    window: dict[str, Any] | None = None,
) -> ExceptionDraft:
    """Exception for a payout the bank pass could not auto-match."""
    if decision.kind is DecisionKind.AMBIGUOUS:
        return build_draft(
            ExceptionType.AMBIGUOUS_BANK_CANDIDATES,
            payout,
            entity_refs_for(payout),
            extra_evidence=decision.evidence,
            best_confidence=decision.confidence,
        )
    return build_draft(
        ExceptionType.PAYOUT_MISSING_IN_BANK,
        payout,
        entity_refs_for(payout),
        extra_evidence={
            "search_window": window if window is not None else decision.evidence.get("search_window", {}),
            "best_confidence": decision.evidence.get("best_confidence", decision.confidence),
        },
    )


def payout_missing_in_ledger_draft(
    payout: NormalizedRecord,
    bank: NormalizedRecord | None,
    proposal: ProposedLedgerEntry,
) -> ExceptionDraft:
    """Exception for a bank-matched payout with no ledger object."""
    refs = entity_refs_for(payout, bank) if bank is not None else entity_refs_for(payout)
    extra = {"bank_txn_id": bank.source_ref, "bank_date": bank.date.isoformat()} if bank is not None else {}
    return build_draft(
        ExceptionType.PAYOUT_MISSING_IN_LEDGER,
        payout,
        refs,
        extra_evidence=extra,
        proposal=proposal,
    )
