"""
recon_config -- single public entrypoint for reconciliation settings.

Responsibility:
    Provides the ONLY way to obtain per-company settings at runtime through
    ``get_company_settings()``.  Services receive the returned frozen
    ``CompanySettings``; they never read YAML or environment variables
    themselves.

Architecture position:
    Configuration -- sits above ``recon_kernel`` and ``recon_engines`` and
    below ``recon_services``.  The kernel MUST NEVER import from
    ``recon_config``.

Invariants enforced:
    - ``defaults`` first, then the company's override block.
    - Values are validated before a settings object is returned.
    - Deterministic: the same YAML and company always yield the same
      settings and the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- the settings file does not exist.
    - ``ValueError`` -- a value is out of range or malformed.

Audit relevance:
    Every successful call emits a ``RECON_CONFIG_TRACE`` log entry with the
    company id, source file and checksum of the effective settings.  That
    checksum ties each run's decisions to the exact thresholds and
    tolerances that produced them.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path

from recon_config.loader import (
    compute_checksum,
    effective_settings_dict,
    load_yaml_file,
    parse_company_settings,
)
from recon_config.schema import CompanySettings, RetrySettings

__all__ = ["CompanySettings", "RetrySettings", "get_company_settings"]

_logger = logging.getLogger("recon_kernel.config")

_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"
_SETTINGS_FILE = "default.yaml"


def get_company_settings(company_id: str, config_dir: Path | None = None) -> CompanySettings:
    """The ONLY public settings entrypoint.

    Args:
        company_id: Company whose override block (if any) is applied.
        config_dir: Directory holding ``default.yaml``.  Defaults to
            recon_config/sets/.

    Raises:
        FileNotFoundError: If the settings file is missing.
        ValueError: If validation fails.
    """
    path = Path(config_dir or _DEFAULT_CONFIG_DIR) / _SETTINGS_FILE
    data = load_yaml_file(path)
    effective = effective_settings_dict(data, company_id)
    settings = parse_company_settings(company_id, effective)
    settings = replace(settings, checksum=compute_checksum(settings.to_dict()))

    _logger.info(
        "RECON_CONFIG_TRACE",
        extra={
            "trace_type": "RECON_CONFIG_TRACE",
            "company_id": company_id,
            "config_path": str(path),
            "checksum": settings.checksum,
            "home_currency": settings.home_currency,
            "auto_match_threshold": settings.auto_match_threshold,
            "ambiguous_threshold": settings.ambiguous_threshold,
        },
    )
    return settings
