"""
Reconciliation Kernel

The persistence and integrity core of the reconciliation engine:
- Append-only matches between payouts, bank transactions and ledger objects
- Exception records with a guarded open -> resolved | ignored lifecycle
- Per-company hash-chained audit log with integrity verification
- Structured logging and a typed error hierarchy shared by every layer
"""

__version__ = "0.1.0"
