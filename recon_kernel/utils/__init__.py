"""Deterministic helpers: hashing, external references, bounded retry."""
