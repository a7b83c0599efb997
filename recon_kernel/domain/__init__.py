"""Pure domain types: clock, currency exponents, normalized records and proposals."""
