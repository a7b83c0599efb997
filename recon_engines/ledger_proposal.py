"""
recon_engines.ledger_proposal -- Build ledger-entry proposals.

Responsibility:
    Describe the ledger deposit that would book a payout or a cash deposit,
    without writing it.  The proposal carries the deterministic external
    reference the ledger linker looks up first, so once the writer
    collaborator executes it the next run links instead of re-proposing.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Payout proposals balance to the net amount: revenue at gross plus a
      negative fee line (only when the fee is non-zero).
    - Account ids are relayed from settings; ``None`` marks an unmapped
      account and is allowed.
"""

from __future__ import annotations

from dataclasses import dataclass

from recon_engines.tracer import traced_engine
from recon_kernel.domain.proposals import ProposedLedgerEntry, ProposedLine
from recon_kernel.domain.records import NormalizedRecord, SourceType
from recon_kernel.utils.idempotency import generate_external_ref

PAYOUT_PROPOSAL_CONFIDENCE = 0.95
CASH_DEPOSIT_PROPOSAL_CONFIDENCE = 0.85


@dataclass(frozen=True)
class LedgerAccounts:
    """Ledger account ids used by proposals.  Any may be unmapped (None)."""

    bank_account_id: str | None = None
    revenue_account_id: str | None = None
    fees_account_id: str | None = None
    cash_sales_account_id: str | None = None
    undeposited_funds_account_id: str | None = None
    bank_charges_account_id: str | None = None


def _payout_lines(record: NormalizedRecord, accounts: LedgerAccounts) -> tuple[ProposedLine, ...]:
    fee = record.fee_minor_units
    gross = record.gross_minor_units
    if gross is None:
        gross = record.amount_minor_units + fee
    lines = [
        ProposedLine(
            role="revenue",
            account_ref=accounts.revenue_account_id,
            amount_minor_units=gross,
            description=f"Gross sales for payout {record.source_ref}",
        )
    ]
    if fee > 0:
        lines.append(
            ProposedLine(
                role="fee",
                account_ref=accounts.fees_account_id,
                amount_minor_units=-fee,
                description=f"Processor fees for payout {record.source_ref}",
            )
        )
    return tuple(lines)


@traced_engine("ledger_proposal", "1.0")
def propose_creation(
    record: NormalizedRecord,
    accounts: LedgerAccounts,
    counterpart: NormalizedRecord | None = None,
) -> ProposedLedgerEntry:
    """
    Proposal for booking ``record`` as a ledger deposit.

    For a payout the transaction date is the bank counterpart's date when
    one is known (the day money actually arrived).  Bank credits become a
    single cash-sales line.
    """
    txn_date = counterpart.date if counterpart is not None else record.date

    if record.source_type is SourceType.PAYOUT:
        lines = _payout_lines(record, accounts)
        memo = f"Processor payout {record.source_ref}"
        if counterpart is not None:
            memo += f" (bank {counterpart.source_ref})"
        confidence = PAYOUT_PROPOSAL_CONFIDENCE
    else:
        lines = (
            ProposedLine(
                role="cash_sales",
                account_ref=accounts.cash_sales_account_id,
                amount_minor_units=record.amount_minor_units,
                description=record.description or f"Deposit {record.source_ref}",
            ),
        )
        memo = f"Bank deposit {record.source_ref}"
        confidence = CASH_DEPOSIT_PROPOSAL_CONFIDENCE

    return ProposedLedgerEntry(
        external_ref=generate_external_ref(record.source_type, record.source_ref),
        entry_type="deposit",
        source_type=record.source_type.value,
        source_ref=record.source_ref,
        amount_minor_units=record.amount_minor_units,
        currency=record.currency,
        txn_date=txn_date,
        memo=memo,
        deposit_account_ref=accounts.bank_account_id,
        lines=lines,
        confidence=confidence,
    )
