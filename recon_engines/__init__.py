"""
Pure reconciliation engines: normalization, candidate scoring and the
match decision policy, exception classification tables and ledger-entry
proposals.  No I/O, no clock, no database.
"""
