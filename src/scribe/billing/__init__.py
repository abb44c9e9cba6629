"""Billing -- append-only credit ledger, user accounts, and provider rate limits."""
