"""Raw source record factories shaped like the provider feeds."""

from datetime import date


def make_payout(
    payout_id: str,
    net: int,
    arrival: date | str,
    fee: int = 0,
    currency: str = "cad",
    description: str = "STRIPE PAYOUT",
) -> dict:
    """Processor payout; amounts in minor units."""
    return {
        "id": payout_id,
        "amount_net": net,
        "amount_fee": fee,
        "amount_gross": net + fee,
        "currency": currency,
        "arrival_date": str(arrival),
        "description": description,
    }


def make_bank_txn(
    txn_id: str,
    amount: str,
    posted: date | str,
    description: str = "STRIPE TRANSFER",
    currency: str = "CAD",
) -> dict:
    """Bank feed transaction; ``amount`` in major units, credits positive."""
    return {
        "provider_tx_id": txn_id,
        "amount": amount,
        "iso_currency_code": currency,
        "date": str(posted),
        "name": description,
    }


def make_ledger_object(
    ledger_id: str,
    amount: str,
    txn_date: date | str,
    obj_type: str = "Deposit",
    external_ref: str | None = None,
    currency: str = "CAD",
    memo: str = "",
) -> dict:
    """Accounting-system object; ``amount`` in major units."""
    raw = {
        "id": ledger_id,
        "amount": amount,
        "currency": currency,
        "txn_date": str(txn_date),
        "obj_type": obj_type,
        "memo": memo,
    }
    if external_ref is not None:
        raw["external_ref"] = external_ref
    return raw
