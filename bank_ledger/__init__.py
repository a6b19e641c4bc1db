"""
Bank Account Ledger

Multi-currency bank accounts with an append-only operation ledger,
exact Decimal money math and atomic balance updates.
"""

__version__ = "1.0.0"
