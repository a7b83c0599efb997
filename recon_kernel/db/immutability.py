"""
ORM-Level Immutability Enforcement.

===============================================================================
WHAT THIS PROTECTS
===============================================================================

Entity                      | When Immutable                    | Rule
----------------------------|-----------------------------------|----------------------------------
Match                       | ALWAYS (from creation)            | Matches are never edited or deleted
AuditEvent                  | ALWAYS (from creation)            | The hash chain is append-only
ReconciliationException     | Once status is resolved/ignored   | Terminal decisions are final
                            | (delete allowed while open)       | Sweeps clear open system rows

===============================================================================
HOW IT WORKS
===============================================================================

    session.flush()
         |
         v
    [before_update event] --> _check_*_immutability() --> ImmutabilityViolationError
         |                                                        ^
         v                                                        |
    [before_delete event] --> _check_*_delete() -----------------+
         |
         v
    SQL sent to database (only if checks pass)

Only ORM unit-of-work operations are intercepted.  Core-level bulk
statements bypass these listeners; the audit chain verification is what
detects tampering performed that way.

===============================================================================
USAGE
===============================================================================

    from recon_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history

from recon_kernel.exceptions import ImmutabilityViolationError
from recon_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _block(entity_type: str, target, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_match_immutability(mapper, connection, target):
    """Matches are never mutated after creation."""
    _block("Match", target, "UPDATE", "Matches are immutable and cannot be modified")


def _check_match_delete(mapper, connection, target):
    """Matches are never deleted."""
    _block("Match", target, "DELETE", "Matches cannot be deleted")


def _check_audit_event_immutability(mapper, connection, target):
    """Audit events are always immutable."""
    _block("AuditEvent", target, "UPDATE", "Audit events are immutable and cannot be modified")


def _check_audit_event_delete(mapper, connection, target):
    """Audit events cannot be deleted."""
    _block("AuditEvent", target, "DELETE", "Audit events cannot be deleted")


def _was_terminal(target) -> bool:
    """
    True if the row was already terminal before this flush.

    Allows the open -> resolved/ignored transition itself, but blocks any
    change after that transition has been flushed.
    """
    from recon_kernel.models.reconciliation_exception import (
        TERMINAL_STATUSES,
        ExceptionStatus,
    )

    terminal = {s.value for s in TERMINAL_STATUSES}
    status_history = get_history(target, "status")
    if status_history.deleted:
        return any(
            (s.value if isinstance(s, ExceptionStatus) else s) in terminal
            for s in status_history.deleted
        )
    current = target.status.value if isinstance(target.status, ExceptionStatus) else target.status
    return current in terminal


def _check_exception_immutability(mapper, connection, target):
    """Terminal exceptions cannot be modified."""
    if _was_terminal(target):
        _block(
            "ReconciliationException", target, "UPDATE",
            f"Exception is terminal ({target.status}) and cannot be modified",
        )


def _check_exception_delete(mapper, connection, target):
    """Only open exceptions may be deleted."""
    if _was_terminal(target):
        _block(
            "ReconciliationException", target, "DELETE",
            f"Exception is terminal ({target.status}) and cannot be deleted",
        )


def _listeners():
    from recon_kernel.models.audit_event import AuditEvent
    from recon_kernel.models.match import Match
    from recon_kernel.models.reconciliation_exception import ReconciliationException

    return [
        (Match, "before_update", _check_match_immutability),
        (Match, "before_delete", _check_match_delete),
        (AuditEvent, "before_update", _check_audit_event_immutability),
        (AuditEvent, "before_delete", _check_audit_event_delete),
        (ReconciliationException, "before_update", _check_exception_immutability),
        (ReconciliationException, "before_delete", _check_exception_delete),
    ]


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Call this once after models are imported and before any database
    operations begin.  Registering twice is a no-op.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that intentionally violate immutability
    rules to verify detection.
    """
    for target, event_name, listener_fn in _listeners():
        _safe_remove_listener(target, event_name, listener_fn)
