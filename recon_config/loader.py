"""
Configuration Loader (``recon_config.loader``).

Responsibility
--------------
Loads the YAML settings file, layers a company's override block over the
defaults and parses the result into a frozen ``CompanySettings``.  Callers
go through ``recon_config.get_company_settings()``; nothing else reads the
YAML.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Values are validated before a ``CompanySettings`` is returned: thresholds
  in [0, 1] with ambiguous <= auto, non-negative tolerances, a positive
  worker count and retry budget, and a three-letter home currency.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the
  effective settings.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid values  -> ``ValueError`` listing every problem found.
"""

from __future__ import annotations

import copy
import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from recon_config.schema import CompanySettings, RetrySettings
from recon_kernel.domain.currency import CurrencyRegistry


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        data = yaml.safe_load(f)
    return data or {}


def merge_settings(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursive merge; ``override`` wins key by key.  Inputs are not modified."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_settings(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def effective_settings_dict(data: dict[str, Any], company_id: str) -> dict[str, Any]:
    """``defaults`` layered with ``companies[company_id]`` (if present)."""
    defaults = data.get("defaults") or {}
    overrides = (data.get("companies") or {}).get(company_id) or {}
    return merge_settings(defaults, overrides)


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


def parse_company_settings(company_id: str, data: dict[str, Any]) -> CompanySettings:
    """
    Parse an effective settings dict into ``CompanySettings``.

    Missing keys take the schema defaults.

    Raises:
        ValueError: if a value cannot be converted or fails validation.
    """
    matching = data.get("matching") or {}
    accounts = data.get("accounts") or {}
    execution = data.get("execution") or {}
    retry = execution.get("retry") or {}
    defaults = CompanySettings(company_id=company_id)

    try:
        percent = Decimal(str(matching.get(
            "amount_tolerance_percent", defaults.amount_tolerance_percent,
        )))
        settings = CompanySettings(
            company_id=company_id,
            home_currency=str(data.get("home_currency", defaults.home_currency)).upper(),
            amount_tolerance_percent=percent,
            amount_tolerance_floor_minor_units=int(matching.get(
                "amount_tolerance_floor_minor_units", defaults.amount_tolerance_floor_minor_units,
            )),
            date_tolerance_days=int(matching.get("date_tolerance_days", defaults.date_tolerance_days)),
            auto_match_threshold=float(matching.get("auto_match_threshold", defaults.auto_match_threshold)),
            ambiguous_threshold=float(matching.get("ambiguous_threshold", defaults.ambiguous_threshold)),
            bank_account_id=_optional_str(accounts.get("bank_account_id")),
            revenue_account_id=_optional_str(accounts.get("revenue_account_id")),
            fees_account_id=_optional_str(accounts.get("fees_account_id")),
            cash_sales_account_id=_optional_str(accounts.get("cash_sales_account_id")),
            undeposited_funds_account_id=_optional_str(accounts.get("undeposited_funds_account_id")),
            bank_charges_account_id=_optional_str(accounts.get("bank_charges_account_id")),
            max_workers=int(execution.get("max_workers", defaults.max_workers)),
            retry=RetrySettings(
                max_attempts=int(retry.get("max_attempts", defaults.retry.max_attempts)),
                base_delay_seconds=float(retry.get("base_delay_seconds", defaults.retry.base_delay_seconds)),
                max_delay_seconds=float(retry.get("max_delay_seconds", defaults.retry.max_delay_seconds)),
            ),
        )
    except (TypeError, InvalidOperation) as exc:
        raise ValueError(f"Invalid settings for company {company_id!r}: {exc}") from exc

    errors = validate_settings(settings)
    if errors:
        raise ValueError(
            f"Settings validation failed for company {company_id!r}:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )
    return settings


def validate_settings(settings: CompanySettings) -> list[str]:
    """Every problem with ``settings``; empty when valid."""
    errors: list[str] = []
    if not CurrencyRegistry.is_well_formed(settings.home_currency):
        errors.append(f"home_currency must be a three-letter code, got {settings.home_currency!r}")
    if not 0.0 <= settings.auto_match_threshold <= 1.0:
        errors.append(f"auto_match_threshold must be in [0, 1], got {settings.auto_match_threshold}")
    if not 0.0 <= settings.ambiguous_threshold <= 1.0:
        errors.append(f"ambiguous_threshold must be in [0, 1], got {settings.ambiguous_threshold}")
    if settings.ambiguous_threshold > settings.auto_match_threshold:
        errors.append("ambiguous_threshold must not exceed auto_match_threshold")
    if settings.amount_tolerance_percent < 0:
        errors.append("amount_tolerance_percent must be non-negative")
    if settings.amount_tolerance_floor_minor_units < 0:
        errors.append("amount_tolerance_floor_minor_units must be non-negative")
    if settings.date_tolerance_days < 0:
        errors.append("date_tolerance_days must be non-negative")
    if settings.max_workers < 1:
        errors.append("max_workers must be at least 1")
    if settings.retry.max_attempts < 1:
        errors.append("retry.max_attempts must be at least 1")
    if settings.retry.base_delay_seconds < 0 or settings.retry.max_delay_seconds < 0:
        errors.append("retry delays must be non-negative")
    return errors


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
