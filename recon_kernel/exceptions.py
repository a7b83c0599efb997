"""
Typed Exception Hierarchy for the Reconciliation Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Reconciliation runs process thousands of records per company and must report
failures per record without aborting the batch.  Callers therefore need to
catch errors by TYPE and read structured attributes, never parse messages:

    try:
        lifecycle.transition(exception_id, "resolve", actor_id)
    except InvalidExceptionTransitionError as e:
        api_response(code=e.code, current=e.from_status)

Every exception:
  1. Has a TYPED class (catch by type, not message)
  2. Has a class-level CODE attribute (machine-readable, API-safe)
  3. Carries structured DATA as attributes (ids, expected vs. actual)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ReconciliationError (base)
    |
    +-- ValidationError
    |   +-- UnsupportedExportFormatError
    |
    +-- NotFoundError
    |   +-- ExceptionNotFoundError
    |   +-- LedgerObjectNotFoundError
    |
    +-- StateConflictError
    |   +-- InvalidExceptionTransitionError
    |
    +-- AuditIntegrityError
    |   +-- AuditChainBrokenError
    |
    +-- TransientProviderError
    |   +-- RetryExhaustedError
    |
    +-- PersistenceError
    |   +-- DuplicateMatchError
    |
    +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | VALIDATION_ERROR            | Malformed raw record (bad date, bad field)
                | UNSUPPORTED_EXPORT_FORMAT   | Audit export format not json/csv
----------------|-----------------------------|-----------------------------------------
Not found       | NOT_FOUND                   | Referenced entity absent
                | EXCEPTION_NOT_FOUND         | Exception id does not exist
                | LEDGER_OBJECT_NOT_FOUND     | Resolving ledger object does not exist
----------------|-----------------------------|-----------------------------------------
State           | STATE_CONFLICT              | Generic lifecycle conflict
                | INVALID_EXCEPTION_TRANSITION| Transition not in VALID_TRANSITIONS
----------------|-----------------------------|-----------------------------------------
Integrity       | AUDIT_INTEGRITY             | Audit chain could not be verified
                | AUDIT_CHAIN_BROKEN          | Recomputed hash != stored hash
----------------|-----------------------------|-----------------------------------------
Transient       | TRANSIENT_PROVIDER          | Rate limit / 5xx from a lookup
                | RETRY_EXHAUSTED             | Retry budget spent on transient errors
----------------|-----------------------------|-----------------------------------------
Persistence     | PERSISTENCE_ERROR           | Write failed, record not consumed
                | DUPLICATE_MATCH             | Match uniqueness constraint hit
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Modifying a match, audit event or
                |                             | terminal exception

===============================================================================
HANDLING PATTERNS
===============================================================================

1. PER-RECORD ERRORS ARE DATA, NOT CONTROL FLOW:

    The matching coordinator catches ReconciliationError per record and
    records (stage, record_ref, code, message) in the run report.  The
    batch always continues.

2. TRANSITION AND INTEGRITY ERRORS ARE SURFACED IMMEDIATELY:

    except AuditChainBrokenError as e:
        alert(e.company_id, e.audit_event_id, e.expected_hash, e.actual_hash)

3. ONLY TransientProviderError IS RETRIED:

    call_with_retry() retries TransientProviderError with bounded backoff.
    Validation and authentication failures are never retried.
"""


class ReconciliationError(Exception):
    """
    Base exception for all reconciliation kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "RECONCILIATION_ERROR"


# Validation


class ValidationError(ReconciliationError):
    """Malformed input; fatal to the single record, not the batch."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None, record_ref: str | None = None):
        self.field = field
        self.record_ref = record_ref
        super().__init__(message)


class UnsupportedExportFormatError(ValidationError):
    """Audit export requested in an unknown encoding."""

    code: str = "UNSUPPORTED_EXPORT_FORMAT"

    def __init__(self, fmt: str):
        self.fmt = fmt
        super().__init__(f"Unsupported audit export format: {fmt!r} (expected json or csv)", field="format")


# Not found


class NotFoundError(ReconciliationError):
    """Referenced entity is absent."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class ExceptionNotFoundError(NotFoundError):
    """Reconciliation exception with the given id does not exist."""

    code: str = "EXCEPTION_NOT_FOUND"

    def __init__(self, exception_id: str):
        self.exception_id = exception_id
        super().__init__("ReconciliationException", exception_id)


class LedgerObjectNotFoundError(NotFoundError):
    """Ledger object referenced by a resolution does not exist."""

    code: str = "LEDGER_OBJECT_NOT_FOUND"

    def __init__(self, company_id: str, ledger_ref: str):
        self.company_id = company_id
        self.ledger_ref = ledger_ref
        super().__init__("LedgerObject", ledger_ref)


# State conflicts


class StateConflictError(ReconciliationError):
    """Operation is illegal in the entity's current state."""

    code: str = "STATE_CONFLICT"


class InvalidExceptionTransitionError(StateConflictError):
    """Exception lifecycle transition not permitted by VALID_TRANSITIONS."""

    code: str = "INVALID_EXCEPTION_TRANSITION"

    def __init__(self, exception_id: str, from_status: str, to_status: str):
        self.exception_id = exception_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid exception transition for {exception_id}: "
            f"{from_status} -> {to_status}"
        )


# Audit integrity


class AuditIntegrityError(ReconciliationError):
    """Audit chain could not be verified.  Surfaced, never auto-repaired."""

    code: str = "AUDIT_INTEGRITY"


class AuditChainBrokenError(AuditIntegrityError):
    """Recomputed hash does not match the stored chain."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(
        self,
        company_id: str,
        audit_event_id: str,
        expected_hash: str | None,
        actual_hash: str | None,
        reason: str = "",
    ):
        self.company_id = company_id
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        self.reason = reason
        super().__init__(
            f"Audit chain broken for company {company_id} at event {audit_event_id}: "
            f"{reason or 'hash mismatch'} (expected {expected_hash}, got {actual_hash})"
        )


# Transient provider failures


class TransientProviderError(ReconciliationError):
    """Rate limit, timeout or 5xx from an external lookup.  Retryable."""

    code: str = "TRANSIENT_PROVIDER"

    def __init__(self, message: str, provider: str | None = None, status: int | None = None):
        self.provider = provider
        self.status = status
        super().__init__(message)


class RetryExhaustedError(TransientProviderError):
    """Bounded retry budget was spent without success."""

    code: str = "RETRY_EXHAUSTED"

    def __init__(self, operation: str, attempts: int, last_error: str):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_error}",
        )


# Persistence


class PersistenceError(ReconciliationError):
    """Write failed; the current record's write is aborted, batch continues."""

    code: str = "PERSISTENCE_ERROR"

    def __init__(self, message: str, operation: str | None = None, record_ref: str | None = None):
        self.operation = operation
        self.record_ref = record_ref
        super().__init__(message)


class DuplicateMatchError(PersistenceError):
    """A match for one of the sides already exists."""

    code: str = "DUPLICATE_MATCH"

    def __init__(self, company_id: str, left_ref: str, right_ref: str):
        self.company_id = company_id
        self.left_ref = left_ref
        self.right_ref = right_ref
        super().__init__(
            f"Match already exists for company {company_id}: {left_ref} -> {right_ref}",
            operation="create_match",
            record_ref=left_ref,
        )


# Immutability


class ImmutabilityViolationError(ReconciliationError):
    """Attempt to modify an append-only or terminal record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")
