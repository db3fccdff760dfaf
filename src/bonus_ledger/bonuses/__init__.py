"""Bonus ledger: earn, spend, adjust, expiry, grants and withdrawals."""
