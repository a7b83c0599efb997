"""
External reference generation utilities.

External references ensure that the same source record always maps to the
same downstream ledger object, even under retries and concurrent workers.
The reference is stored on the ledger object and carries a unique
constraint per company.
"""


def generate_external_ref(source_type: str, source_ref: str) -> str:
    """
    Generate the deterministic external reference for a source record.

    Format: source_type:source_ref

    Example:
        >>> generate_external_ref("payout", "po_1NvX")
        "payout:po_1NvX"
    """
    source_type = getattr(source_type, "value", source_type)
    return f"{source_type}:{source_ref}"


def parse_external_ref(ref: str) -> tuple[str, str]:
    """
    Parse an external reference into (source_type, source_ref).

    Raises:
        ValueError: If ref format is invalid.
    """
    parts = ref.split(":", 1)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValueError(f"Invalid external reference format: {ref}")
    return parts[0], parts[1]
