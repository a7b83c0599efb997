"""
Reconciliation services: the payout/bank matcher, the ledger linker, the
exceptions engine sweep and the matching coordinator that runs them.
"""
