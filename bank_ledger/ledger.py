"""
Account Ledger Engine

The sole authority for balance mutation and operation recording. Every
balance change is an explicit DEPOSIT or WITHDRAWAL operation, and every
operation carries the balance it produced.

Mutations run as a unit of work: a per-account lock plus a storage
transaction, so the account write and the operation insert commit together
and concurrent writers on one account never compute from a stale balance.
Currency conversion happens before the lock is taken.
"""

from datetime import datetime, timezone
from contextlib import contextmanager
from typing import Callable, List, Optional

from .currency import Money, Currency, CurrencyConverter
from .storage import StorageInterface
from .accounts import Account, AccountStore
from .operations import Operation, OperationStore, OperationType
from .exceptions import AccountNotFoundError, InsufficientFundsError, InvalidAmountError
from .logging_config import get_logger, log_action


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AccountLedger:
    """
    Creates accounts, applies deposits and withdrawals, and serves statements
    """

    def __init__(
        self,
        storage: StorageInterface,
        converter: CurrencyConverter,
        default_currency: Currency = Currency.EUR,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.converter = converter
        self.default_currency = default_currency
        self.accounts = AccountStore(storage)
        self.operations = OperationStore(storage)
        self._clock = clock or utc_now
        self.logger = get_logger("bank_ledger.ledger")

    @contextmanager
    def _unit_of_work(self, account_id: str):
        with self.storage.record_lock(AccountStore.table, account_id):
            with self.storage.atomic():
                yield

    def create_account(self, initial_amount: Optional[Money] = None) -> Account:
        """
        Open an account, depositing ``initial_amount`` when it is positive.

        The account is denominated in the initial amount's currency, or in
        the default currency when the amount is absent or zero.

        Raises:
            InvalidAmountError: If the initial amount is negative
        """
        if initial_amount is not None and initial_amount.is_negative():
            raise InvalidAmountError("Initial amount cannot be negative")
        if initial_amount is None or initial_amount.is_zero():
            initial_amount = Money.zero(self.default_currency)

        with self.storage.atomic():
            account = self.accounts.save(Account.open(initial_amount.currency, self._clock()))
            if initial_amount.is_positive():
                account = self._post(account, OperationType.DEPOSIT, initial_amount)

        log_action(
            self.logger, "info", f"Account created: {account.id}",
            action="create_account", resource=f"account:{account.id}",
            extra={"currency": account.currency.code, "balance": str(account.balance.amount)}
        )
        return account

    def get_account(self, account_id: str) -> Account:
        account = self.accounts.find_by_id(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    def get_all_accounts(self) -> List[Account]:
        return self.accounts.find_all()

    def deposit(self, account_id: str, amount: Money) -> None:
        """
        Credit ``amount`` (any currency) to the account.

        Raises:
            AccountNotFoundError: If the account does not exist
            ConversionUnavailableError: If the amount cannot be converted
            InvalidAmountError: If the amount is not positive once converted
        """
        funds = self._positive_funds(account_id, amount, "Deposit")

        with self._unit_of_work(account_id):
            self._post(self.get_account(account_id), OperationType.DEPOSIT, funds)

    def withdraw(self, account_id: str, amount: Money) -> None:
        """
        Debit ``amount`` (any currency) from the account.

        Raises:
            AccountNotFoundError: If the account does not exist
            InsufficientFundsError: If the balance is below the converted amount
            ConversionUnavailableError: If the amount cannot be converted
            InvalidAmountError: If the amount is not positive once converted
        """
        funds = self._positive_funds(account_id, amount, "Withdrawal")

        with self._unit_of_work(account_id):
            self._withdraw_funds(self.get_account(account_id), funds)

    def update_account_balance(self, account_id: str, target: Money) -> Account:
        """
        Move the balance to exactly ``target`` by recording the deposit or
        withdrawal of the difference. No operation is recorded when the
        converted target equals the current balance.
        """
        if target.is_negative():
            raise InvalidAmountError("Target balance cannot be negative")
        desired = target.convert_to(self.get_account(account_id).currency, self.converter)

        with self._unit_of_work(account_id):
            account = self.get_account(account_id)
            delta = desired - account.balance
            if delta.is_positive():
                account = self._post(account, OperationType.DEPOSIT, delta)
            elif delta.is_negative():
                account = self._withdraw_funds(account, -delta)

        log_action(
            self.logger, "info", f"Balance updated: {account_id}",
            action="update_balance", resource=f"account:{account_id}",
            extra={"delta": str(delta.amount), "balance": str(account.balance.amount)}
        )
        return account

    def delete_account(self, account_id: str) -> bool:
        """
        Delete the account's operations, then the account.

        Returns:
            True if the account existed. Leftover operations of a missing
            account are removed either way.
        """
        with self._unit_of_work(account_id):
            removed = self.operations.delete_all_by_account_id(account_id)
            existed = self.accounts.delete_by_id(account_id)

        log_action(
            self.logger, "info", f"Account deleted: {account_id}",
            action="delete_account", resource=f"account:{account_id}",
            extra={"existed": existed, "operations_removed": removed}
        )
        return existed

    def get_statement(self, account_id: str) -> List[Operation]:
        """Operations of the account, oldest first; empty for unknown accounts"""
        return self.operations.find_by_account_id_ordered_by_date_asc(account_id)

    def _positive_funds(self, account_id: str, amount: Money, label: str) -> Money:
        """Amount in the account's currency; it must stay positive after conversion rounding"""
        if not amount.is_positive():
            raise InvalidAmountError(f"{label} amount must be positive")
        funds = amount.convert_to(self.get_account(account_id).currency, self.converter)
        if not funds.is_positive():
            raise InvalidAmountError(
                f"{label} amount {amount.currency.code} {amount.amount} rounds to zero in {funds.currency.code}"
            )
        return funds

    def _withdraw_funds(self, account: Account, funds: Money) -> Account:
        if account.balance < funds:
            log_action(
                self.logger, "warning", f"Withdrawal rejected for account {account.id}",
                action="withdraw", resource=f"account:{account.id}",
                extra={"balance": str(account.balance.amount), "requested": str(funds.amount),
                       "currency": account.currency.code}
            )
            raise InsufficientFundsError(
                account.id, account.balance.amount, funds.amount, account.currency.code
            )
        return self._post(account, OperationType.WITHDRAWAL, -funds)

    def _post(self, account: Account, operation_type: OperationType, funds: Money) -> Account:
        """Persist the new balance and append the operation that produced it"""
        new_balance = account.balance + funds
        updated = self.accounts.save(account.with_balance(new_balance))
        operation = self.operations.save(Operation(
            account_id=account.id,
            operation_type=operation_type,
            funds=funds,
            occurred_at=self._clock(),
            balance_after=new_balance
        ))

        log_action(
            self.logger, "info", f"{operation_type.value} recorded on account {account.id}",
            action=operation_type.value.lower(), resource=f"account:{account.id}",
            extra={"operation_id": operation.id, "funds": str(funds.amount),
                   "balance_after": str(new_balance.amount), "currency": funds.currency.code}
        )
        return updated
