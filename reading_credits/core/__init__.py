"""
Core modules for reading credits.

This package contains the credit ledger: feature costs, quota resets,
the balance reader, the atomic transactor and admin adjustments.
"""
