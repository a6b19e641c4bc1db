"""
Account Records Module

The Account value and the store that persists it. An account's balance is
denominated in its native currency; only the ledger produces new balances.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, replace
from typing import Dict, List, Optional
import uuid

from .currency import Money, Currency
from .storage import StorageInterface


@dataclass(frozen=True)
class Account:
    """
    Bank account snapshot.

    ``id`` is None until the account is first saved.
    """
    balance: Money
    created_at: datetime
    id: Optional[str] = None

    @property
    def currency(self) -> Currency:
        """Native currency of the account"""
        return self.balance.currency

    @classmethod
    def open(cls, currency: Currency, created_at: datetime) -> 'Account':
        """New, unsaved account with zero balance"""
        return cls(balance=Money.zero(currency), created_at=created_at)

    def with_balance(self, balance: Money) -> 'Account':
        if balance.currency != self.currency:
            raise ValueError("Balance currency must match account currency")
        return replace(self, balance=balance)


class AccountStore:
    """Persists Account records"""

    table = "accounts"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def save(self, account: Account) -> Account:
        """Save an account, assigning its id on first save"""
        if account.id is None:
            account = replace(account, id=str(uuid.uuid4()))
        self.storage.save(self.table, account.id, self._account_to_dict(account))
        return account

    def find_by_id(self, account_id: str) -> Optional[Account]:
        data = self.storage.load(self.table, account_id)
        if data:
            return self._account_from_dict(data)
        return None

    def find_all(self) -> List[Account]:
        return [self._account_from_dict(data) for data in self.storage.load_all(self.table)]

    def delete_by_id(self, account_id: str) -> bool:
        return self.storage.delete(self.table, account_id)

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        return {
            'id': account.id,
            'balance_amount': str(account.balance.amount),
            'currency': account.currency.code,
            'created_at': account.created_at.isoformat(),
        }

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        return Account(
            id=data['id'],
            balance=Money(Decimal(data['balance_amount']), Currency[data['currency']]),
            created_at=datetime.fromisoformat(data['created_at']),
        )
