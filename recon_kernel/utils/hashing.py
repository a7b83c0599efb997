"""
Deterministic hashing utilities.

All hashing in the reconciliation kernel must be deterministic and
reproducible.  This module provides the canonical hashing functions used by
the audit chain and by exception fingerprints.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Decimal):
        return str(obj.normalize())
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    if isinstance(obj, bytes):
        return obj.hex()

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: Any) -> str:
    """
    Convert data to canonical JSON string.

    Keys are sorted, there is no whitespace, and Decimal/datetime/UUID/Enum
    values are rendered consistently.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_payload(payload: Any) -> str:
    """Hex-encoded SHA-256 of the canonical JSON form of ``payload``."""
    return sha256_hex(canonicalize_json(payload))


def chain_hash(prev_hash: str, payload_hash: str) -> str:
    """
    Link hash for an audit event: ``sha256(prev_hash + payload_hash)``.

    ``prev_hash`` is the empty string for the first event of a company.
    """
    return sha256_hex((prev_hash or "") + payload_hash)


def exception_fingerprint(exception_type: str, entity_refs: dict) -> str:
    """Stable identity of an exception across sweeps: type plus entity refs."""
    return hash_payload({"type": exception_type, "entity_refs": entity_refs})
