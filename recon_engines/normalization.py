"""
recon_engines.normalization -- Decode raw source records into NormalizedRecord.

Responsibility:
    Turn one raw payout, bank transaction or ledger object dict into the
    canonical ``NormalizedRecord``: integer minor-unit amount, ISO currency,
    calendar date, description, keyword set and amount/date bucket keys.
    Every record is decoded exactly once, here, at the boundary.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import recon_kernel/domain, recon_kernel/exceptions and the
    kernel logger.

Invariants enforced:
    - No float ever reaches an amount: major-unit values go through
      ``Decimal(str(value))`` and are scaled by the currency's ISO 4217
      exponent with ROUND_HALF_UP.
    - Pure: identical raw input always yields an identical record.

Failure modes:
    - ValidationError for a missing/unparseable date, a missing source
      reference or a malformed currency code.  Fatal to that record only.
    - An unparseable amount is NOT raised: the amount becomes 0 and a
      ``normalization_amount_unparseable`` warning is logged.

Audit relevance:
    Bucket keys and keywords produced here are what the candidate matcher
    indexes and scores on, so exception evidence can always be traced back
    to the raw fields that produced it.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from recon_engines.tracer import traced_engine
from recon_kernel.domain.currency import CurrencyRegistry
from recon_kernel.domain.records import NormalizedRecord, SourceType, extract_source_ref
from recon_kernel.exceptions import ValidationError
from recon_kernel.logging_config import get_logger

logger = get_logger("engines.normalization")

MINOR_UNIT_FIELDS = ("amount_minor_units", "amount_net", "amount_cents")
MAJOR_UNIT_FIELDS = ("amount", "total")
CURRENCY_FIELDS = ("currency", "iso_currency_code", "currency_code")
DATE_FIELDS = ("date", "posted_date", "txn_date", "arrival_date", "created_at")
DESCRIPTION_FIELDS = ("description", "name", "memo")

BUCKET_OFFSETS = range(-2, 3)

KEYWORD_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), keyword)
    for pattern, keyword in (
        (r"\b(?:stripe|strp)\b", "STRIPE"),
        (r"\b(?:paypal|pp)\b", "PAYPAL"),
        (r"\bsquare\b", "SQUARE"),
        (r"\b(?:interac|etransfer|e-transfer)\b", "INTERAC"),
        (r"\b(?:atm|cash)\b", "ATM"),
        (r"\b(?:deposit|dep)\b", "DEPOSIT"),
        (r"\b(?:withdrawal|wdl)\b", "WITHDRAWAL"),
        (r"\b(?:payment|pmt)\b", "PAYMENT"),
        (r"\b(?:transfer|xfer)\b", "TRANSFER"),
        (r"\b(?:fee|charge)\b", "FEE"),
        (r"\b(?:refund|rfd)\b", "REFUND"),
        (r"\b(?:pos|point of sale)\b", "POS"),
        (r"\b(?:online|web)\b", "ONLINE"),
        (r"\b(?:mobile|app)\b", "MOBILE"),
        (r"\b(?:business|corp)\b", "BUSINESS"),
        (r"\b(?:recurring|subscription)\b", "RECURRING"),
    )
)

_WORD_RE = re.compile(r"[a-z0-9]+")
_NON_NUMERIC_RE = re.compile(r"[^0-9.\-]")


def extract_keywords(description: str) -> frozenset[str]:
    """Keywords whose pattern matches ``description`` as a whole word."""
    if not description:
        return frozenset()
    return frozenset(
        keyword for pattern, keyword in KEYWORD_PATTERNS if pattern.search(description)
    )


def description_tokens(description: str) -> frozenset[str]:
    """Lower-cased alphanumeric words of a description."""
    return frozenset(_WORD_RE.findall((description or "").lower()))


def bucket_keys(amount_minor_units: int, currency: str, on: date) -> frozenset[str]:
    """``{amount}_{currency}_{date}`` for each date within two days of ``on``."""
    return frozenset(
        f"{amount_minor_units}_{currency}_{(on + timedelta(days=d)).isoformat()}"
        for d in BUCKET_OFFSETS
    )


def _first_present(raw: dict[str, Any], names: tuple[str, ...]) -> tuple[str | None, Any]:
    for name in names:
        value = raw.get(name)
        if value is not None and value != "":
            return name, value
    return None, None


def _to_decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = _NON_NUMERIC_RE.sub("", value)
        if not value:
            return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def _minor_units_value(value: Any) -> int | None:
    """Integer minor units from an already-minor field; None if not integral."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    parsed = _to_decimal(value)
    if parsed is None or parsed != parsed.to_integral_value():
        return None
    return int(parsed)


def _amount_unparseable(source_ref: str, field_name: str | None, value: Any) -> int:
    logger.warning(
        "normalization_amount_unparseable",
        extra={"record_ref": source_ref, "field": field_name, "raw_value": repr(value)},
    )
    return 0


def parse_amount(raw: dict[str, Any], currency: str, source_ref: str = "") -> int:
    """
    Amount of ``raw`` in integer minor units of ``currency``.

    Minor-unit fields win over major-unit fields.  Never raises; an
    unreadable amount is logged and treated as 0.
    """
    name, value = _first_present(raw, MINOR_UNIT_FIELDS)
    if name is not None:
        minor = _minor_units_value(value)
        if minor is None:
            return _amount_unparseable(source_ref, name, value)
        return minor

    name, value = _first_present(raw, MAJOR_UNIT_FIELDS)
    if name is None:
        return _amount_unparseable(source_ref, None, None)
    major = _to_decimal(value)
    if major is None:
        return _amount_unparseable(source_ref, name, value)
    return CurrencyRegistry.to_minor_units(major, currency)


def parse_date(value: Any, field_name: str = "date", source_ref: str | None = None) -> date:
    """
    Calendar date from a date, datetime, ISO string or Unix epoch seconds.

    Raises:
        ValidationError: If the value cannot be interpreted as a date.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc).date()
        except (OverflowError, OSError, ValueError):
            pass
    elif isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return parse_date(int(text), field_name, source_ref)
        try:
            if len(text) == 10:
                return date.fromisoformat(text)
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError:
            pass
    raise ValidationError(
        f"Unparseable date {value!r} in field {field_name!r}",
        field=field_name,
        record_ref=source_ref,
    )


@traced_engine("normalization", "1.0", fingerprint_fields=("raw", "source_type"))
def normalize(
    raw: dict[str, Any],
    source_type: SourceType | str,
    source_ref: str | None = None,
    home_currency: str = "CAD",
) -> NormalizedRecord:
    """
    Decode one raw record.

    Raises:
        ValidationError: missing reference, missing/unparseable date or a
            malformed currency code.
    """
    source_type = SourceType(source_type)

    if source_ref is None:
        source_ref = extract_source_ref(raw)
        if source_ref is None:
            raise ValidationError("Record has no source reference", field="id")

    _, currency_value = _first_present(raw, CURRENCY_FIELDS)
    currency = str(currency_value if currency_value is not None else home_currency).strip().upper()
    if not CurrencyRegistry.is_well_formed(currency):
        raise ValidationError(
            f"Malformed currency code {currency_value!r}",
            field="currency",
            record_ref=source_ref,
        )

    date_field, date_value = _first_present(raw, DATE_FIELDS)
    if date_field is None:
        raise ValidationError("Record has no date", field="date", record_ref=source_ref)
    record_date = parse_date(date_value, date_field, source_ref)

    amount = parse_amount(raw, currency, source_ref)

    _, description_value = _first_present(raw, DESCRIPTION_FIELDS)
    description = str(description_value).strip() if description_value is not None else ""

    extras: dict[str, Any] = {}
    if source_type is SourceType.PAYOUT:
        fee = raw.get("amount_fee")
        gross = raw.get("amount_gross")
        extras["fee_minor_units"] = (_minor_units_value(fee) or 0) if fee is not None else 0
        extras["gross_minor_units"] = _minor_units_value(gross) if gross is not None else None
    elif source_type is SourceType.LEDGER:
        extras["external_ref"] = raw.get("external_ref") or None
        extras["object_type"] = raw.get("obj_type") or None

    return NormalizedRecord(
        source_type=source_type,
        source_ref=source_ref,
        amount_minor_units=amount,
        currency=currency,
        date=record_date,
        description=description,
        keywords=extract_keywords(description),
        bucket_keys=bucket_keys(amount, currency, record_date),
        **extras,
    )


@dataclass
class NormalizationResult:
    """Records that decoded, plus (source_ref, error) for those that did not."""

    records: list[NormalizedRecord] = field(default_factory=list)
    errors: list[tuple[str, ValidationError]] = field(default_factory=list)


def normalize_pool(
    items: Iterable[tuple[str, dict[str, Any]]],
    source_type: SourceType | str,
    home_currency: str = "CAD",
) -> NormalizationResult:
    """
    Normalize ``(source_ref, raw)`` pairs, collecting per-record failures.

    Output is ordered by (date, source_ref).
    """
    result = NormalizationResult()
    for source_ref, raw in items:
        try:
            result.records.append(
                normalize(raw, source_type, source_ref=source_ref, home_currency=home_currency)
            )
        except ValidationError as exc:
            logger.warning(
                "normalization_record_rejected",
                extra={
                    "record_ref": source_ref,
                    "source_type": SourceType(source_type).value,
                    "field": exc.field,
                    "error": str(exc),
                },
            )
            result.errors.append((source_ref, exc))
    result.records.sort(key=lambda r: (r.date, r.source_ref))
    return result
