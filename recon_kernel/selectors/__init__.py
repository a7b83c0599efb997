"""Read-only query selectors (the Q side) for the reconciliation kernel."""

from recon_kernel.selectors.audit_selector import AuditEventView, AuditSelector, AuditStats
from recon_kernel.selectors.exception_selector import ExceptionSelector, ExceptionStats, ExceptionView
from recon_kernel.selectors.source_selector import MatchedRefs, SourceSelector

__all__ = [
    "AuditEventView",
    "AuditSelector",
    "AuditStats",
    "ExceptionSelector",
    "ExceptionStats",
    "ExceptionView",
    "MatchedRefs",
    "SourceSelector",
]
