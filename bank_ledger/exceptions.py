"""
Ledger Error Taxonomy

Every failure raised by the ledger engine and its collaborators.
"""

from decimal import Decimal
from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger errors"""
    pass


class AccountNotFoundError(LedgerError):
    """Raised when an operation references a nonexistent account"""

    def __init__(self, account_id: Optional[str]):
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class InsufficientFundsError(LedgerError):
    """Raised when a withdrawal exceeds the account balance"""

    def __init__(self, account_id: str, balance: Decimal, requested: Decimal, currency_code: str):
        self.account_id = account_id
        self.balance = balance
        self.requested = requested
        self.currency_code = currency_code
        super().__init__(
            f"Insufficient funds in account {account_id}: "
            f"balance {currency_code} {balance}, requested {currency_code} {requested}"
        )


class CurrencyMismatchError(LedgerError, ValueError):
    """Raised when Money arithmetic mixes currencies without conversion"""
    pass


class ConversionUnavailableError(LedgerError):
    """Raised when the converter cannot resolve an exchange rate"""

    def __init__(self, from_code: str, to_code: str):
        self.from_code = from_code
        self.to_code = to_code
        super().__init__(f"No exchange rate available for {from_code} -> {to_code}")


class InvalidAmountError(LedgerError, ValueError):
    """Raised when an amount is negative, or not positive where a positive one is required"""
    pass
