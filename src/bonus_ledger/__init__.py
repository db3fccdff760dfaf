"""Bonus-currency ledger: balances, expiry, commission conversion and withdrawals."""

__version__ = "0.1.0"
