"""Kernel services: audit chain, sequences, exception lifecycle, source store."""
