"""
Operation Records Module

Append-only ledger entries. An Operation is populated once at construction
and never changed; operations disappear only together with their account.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, replace
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface


class OperationType(Enum):
    """Kinds of balance-affecting operations"""
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"


@dataclass(frozen=True)
class Operation:
    """
    One ledger entry.

    ``funds`` is signed: positive for deposits, negative for withdrawals.
    ``balance_after`` is the account balance right after this entry.
    """
    account_id: str
    operation_type: OperationType
    funds: Money
    occurred_at: datetime
    balance_after: Money
    id: Optional[str] = None

    def __post_init__(self):
        if self.funds.currency != self.balance_after.currency:
            raise ValueError("Operation funds and resulting balance must share a currency")
        if self.operation_type == OperationType.DEPOSIT and not self.funds.is_positive():
            raise ValueError("Deposit funds must be positive")
        if self.operation_type == OperationType.WITHDRAWAL and not self.funds.is_negative():
            raise ValueError("Withdrawal funds must be negative")

    @property
    def currency(self) -> Currency:
        return self.funds.currency


class OperationStore:
    """Persists Operation records; supports append, query and bulk delete only"""

    table = "operations"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def save(self, operation: Operation) -> Operation:
        """Append a new operation, assigning its id"""
        if operation.id is not None and self.storage.exists(self.table, operation.id):
            raise ValueError(f"Operation {operation.id} already recorded")
        if operation.id is None:
            operation = replace(operation, id=str(uuid.uuid4()))
        self.storage.save(self.table, operation.id, self._operation_to_dict(operation))
        return operation

    def find_by_account_id_ordered_by_date_asc(self, account_id: str) -> List[Operation]:
        """Operations of one account, oldest first; ties keep insertion order"""
        operations = [
            self._operation_from_dict(data)
            for data in self.storage.find(self.table, {"account_id": account_id})
        ]
        return sorted(operations, key=lambda op: op.occurred_at)

    def delete_all_by_account_id(self, account_id: str) -> int:
        return self.storage.delete_where(self.table, {"account_id": account_id})

    def _operation_to_dict(self, operation: Operation) -> Dict:
        return {
            'id': operation.id,
            'account_id': operation.account_id,
            'operation_type': operation.operation_type.value,
            'amount': str(operation.funds.amount),
            'currency': operation.funds.currency.code,
            'occurred_at': operation.occurred_at.isoformat(),
            'balance_after': str(operation.balance_after.amount),
            'balance_currency': operation.balance_after.currency.code,
        }

    def _operation_from_dict(self, data: Dict) -> Operation:
        return Operation(
            id=data['id'],
            account_id=data['account_id'],
            operation_type=OperationType(data['operation_type']),
            funds=Money(Decimal(data['amount']), Currency[data['currency']]),
            occurred_at=datetime.fromisoformat(data['occurred_at']),
            balance_after=Money(Decimal(data['balance_after']), Currency[data['balance_currency']]),
        )
