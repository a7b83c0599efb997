"""Persistence models for the reconciliation kernel."""

from recon_kernel.models.audit_event import AuditEvent, AuditVerb
from recon_kernel.models.match import Match, MatchStrategy
from recon_kernel.models.reconciliation_exception import (
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    ExceptionStatus,
    ReconciliationException,
)
from recon_kernel.models.sequence_counter import SequenceCounter
from recon_kernel.models.source_record import SourceRecord

__all__ = [
    "AuditEvent",
    "AuditVerb",
    "ExceptionStatus",
    "Match",
    "MatchStrategy",
    "ReconciliationException",
    "SequenceCounter",
    "SourceRecord",
    "TERMINAL_STATUSES",
    "VALID_TRANSITIONS",
]
