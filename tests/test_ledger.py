"""
Test suite for the account ledger engine

Covers account lifecycle, deposits and withdrawals in any currency, exact
balance updates, statements, all-or-nothing persistence and concurrent
access to the same and to different accounts.
"""

import logging
import threading
import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta
from unittest.mock import Mock

from bank_ledger.currency import Money, Currency, CurrencyConverter, RateTableConverter
from bank_ledger.storage import InMemoryStorage, SQLiteStorage
from bank_ledger.ledger import AccountLedger
from bank_ledger.operations import OperationType
from bank_ledger.exceptions import (
    AccountNotFoundError, InsufficientFundsError, ConversionUnavailableError, InvalidAmountError
)


START = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class SteppingClock:
    """Clock advancing one second per reading"""

    def __init__(self, start: datetime = START):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            self.now += timedelta(seconds=1)
            return self.now


def eur(amount: str) -> Money:
    return Money(Decimal(amount), Currency.EUR)


def usd(amount: str) -> Money:
    return Money(Decimal(amount), Currency.USD)


def make_sqlite():
    return SQLiteStorage(":memory:")


@pytest.fixture(params=[InMemoryStorage, make_sqlite], ids=["memory", "sqlite"])
def ledger(request):
    storage = request.param()
    converter = RateTableConverter.from_mapping({"USD/EUR": "0.5"})
    yield AccountLedger(storage, converter, clock=SteppingClock())
    storage.close()


def assert_ledger_consistent(ledger, account_id):
    """Balance equals the sum of funds and every balance_after replays"""
    account = ledger.get_account(account_id)
    running = Money.zero(account.currency)
    for operation in ledger.get_statement(account_id):
        running = running + operation.funds
        assert operation.balance_after == running
        assert not running.is_negative()
    assert account.balance == running


class TestAccountLifecycle:
    """Creating, reading and deleting accounts"""

    def test_create_with_zero_amount(self, ledger):
        """A zero initial amount records nothing"""
        account = ledger.create_account(eur('0'))

        assert account.id
        assert account.balance == eur('0')
        assert ledger.get_statement(account.id) == []

    def test_create_with_initial_amount(self, ledger):
        """A positive initial amount is recorded as one deposit"""
        account = ledger.create_account(eur('123.45'))

        assert account.balance == eur('123.45')
        statement = ledger.get_statement(account.id)
        assert len(statement) == 1
        assert statement[0].operation_type == OperationType.DEPOSIT
        assert statement[0].funds == eur('123.45')
        assert statement[0].balance_after == eur('123.45')

    def test_create_with_zero_amount_uses_default_currency(self, ledger):
        """A zero amount in another currency still opens a default-currency account"""
        account = ledger.create_account(usd('0'))

        assert account.currency == Currency.EUR
        assert account.balance == eur('0')
        assert ledger.get_statement(account.id) == []

    def test_create_uses_default_currency(self, ledger):
        account = ledger.create_account()
        assert account.currency == Currency.EUR
        assert account.balance.is_zero()

    def test_create_in_amount_currency(self, ledger):
        """The initial amount's currency becomes the native currency"""
        account = ledger.create_account(usd('10'))
        assert account.currency == Currency.USD
        assert ledger.get_account(account.id).balance == usd('10')

    def test_create_with_negative_amount(self, ledger):
        with pytest.raises(InvalidAmountError, match="cannot be negative"):
            ledger.create_account(eur('-1'))
        assert ledger.get_all_accounts() == []

    def test_created_at_is_set_once(self, ledger):
        account = ledger.create_account(eur('10'))
        ledger.deposit(account.id, eur('5'))
        assert ledger.get_account(account.id).created_at == account.created_at

    def test_get_missing_account(self, ledger):
        with pytest.raises(AccountNotFoundError, match="Account not found: missing"):
            ledger.get_account("missing")

    def test_get_all_accounts(self, ledger):
        first = ledger.create_account(eur('1'))
        second = ledger.create_account(usd('2'))
        assert [a.id for a in ledger.get_all_accounts()] == [first.id, second.id]

    def test_delete_account(self, ledger):
        """Deleting removes the account and its operations"""
        account = ledger.create_account()
        ledger.deposit(account.id, eur('10'))
        ledger.withdraw(account.id, eur('4'))
        other = ledger.create_account(eur('7'))

        assert ledger.delete_account(account.id)

        with pytest.raises(AccountNotFoundError):
            ledger.get_account(account.id)
        assert ledger.get_statement(account.id) == []
        assert len(ledger.get_statement(other.id)) == 1

    def test_delete_missing_account(self, ledger):
        assert not ledger.delete_account("missing")

    def test_statement_of_unknown_account_is_empty(self, ledger):
        assert ledger.get_statement("never-existed") == []


class TestDepositWithdraw:
    """Deposit and withdrawal primitives"""

    def test_deposit_then_withdraw(self, ledger):
        """Statement lists operations oldest first with running balances"""
        account = ledger.create_account()
        ledger.deposit(account.id, eur('200.00'))
        ledger.withdraw(account.id, eur('50.00'))

        assert ledger.get_account(account.id).balance == eur('150.00')
        statement = ledger.get_statement(account.id)
        assert [(op.operation_type, op.funds, op.balance_after) for op in statement] == [
            (OperationType.DEPOSIT, eur('200.00'), eur('200.00')),
            (OperationType.WITHDRAWAL, eur('-50.00'), eur('150.00')),
        ]
        assert statement[0].occurred_at < statement[1].occurred_at
        assert_ledger_consistent(ledger, account.id)

    def test_withdraw_insufficient_funds(self, ledger):
        """A failed withdrawal records nothing"""
        account = ledger.create_account()

        with pytest.raises(InsufficientFundsError) as exc_info:
            ledger.withdraw(account.id, eur('10.00'))

        assert exc_info.value.account_id == account.id
        assert exc_info.value.balance == Decimal('0')
        assert exc_info.value.requested == Decimal('10.00')
        assert ledger.get_statement(account.id) == []
        assert ledger.get_account(account.id).balance == eur('0')

    def test_withdraw_entire_balance(self, ledger):
        account = ledger.create_account(eur('25'))
        ledger.withdraw(account.id, eur('25'))
        assert ledger.get_account(account.id).balance.is_zero()

    @pytest.mark.parametrize("amount", ['0', '-5'])
    def test_non_positive_amounts_rejected(self, ledger, amount):
        account = ledger.create_account(eur('10'))
        with pytest.raises(InvalidAmountError):
            ledger.deposit(account.id, eur(amount))
        with pytest.raises(InvalidAmountError):
            ledger.withdraw(account.id, eur(amount))
        assert len(ledger.get_statement(account.id)) == 1

    def test_sub_precision_amount_rejected(self, ledger):
        """Amounts rounding to zero at four places are not positive"""
        account = ledger.create_account(eur('10'))

        with pytest.raises(InvalidAmountError, match="must be positive"):
            ledger.deposit(account.id, eur('0.00001'))
        with pytest.raises(InvalidAmountError, match="must be positive"):
            ledger.withdraw(account.id, eur('0.00004'))

        assert ledger.get_account(account.id).balance == eur('10')
        assert len(ledger.get_statement(account.id)) == 1

    def test_amount_converting_to_zero_rejected(self):
        """A positive foreign amount must stay positive in the native currency"""
        ledger = AccountLedger(InMemoryStorage(), RateTableConverter.from_mapping({"USD/EUR": "0.4"}))
        account = ledger.create_account(eur('10'))

        with pytest.raises(InvalidAmountError, match="rounds to zero in EUR"):
            ledger.deposit(account.id, usd('0.0001'))
        with pytest.raises(InvalidAmountError, match="rounds to zero in EUR"):
            ledger.withdraw(account.id, usd('0.0001'))

        assert ledger.get_account(account.id).balance == eur('10')
        assert len(ledger.get_statement(account.id)) == 1

    def test_invalid_amount_is_a_value_error(self, ledger):
        account = ledger.create_account()
        with pytest.raises(ValueError):
            ledger.deposit(account.id, eur('0'))

    def test_unknown_account(self, ledger):
        with pytest.raises(AccountNotFoundError):
            ledger.deposit("missing", eur('1'))
        with pytest.raises(AccountNotFoundError):
            ledger.withdraw("missing", eur('1'))

    def test_deposit_converts_to_native_currency(self, ledger):
        """Foreign deposits are recorded in the account's currency"""
        account = ledger.create_account()
        ledger.deposit(account.id, usd('10.00'))

        operation = ledger.get_statement(account.id)[0]
        assert operation.funds == eur('5.00')
        assert operation.balance_after == eur('5.00')
        assert ledger.get_account(account.id).balance == eur('5.00')

    def test_withdraw_converts_before_checking_funds(self, ledger):
        account = ledger.create_account(eur('5'))

        ledger.withdraw(account.id, usd('6'))
        assert ledger.get_account(account.id).balance == eur('2')

        with pytest.raises(InsufficientFundsError):
            ledger.withdraw(account.id, usd('6'))
        assert ledger.get_account(account.id).balance == eur('2')

    def test_missing_rate_mutates_nothing(self, ledger):
        account = ledger.create_account(eur('10'))
        gbp = Money(Decimal('1'), Currency.GBP)

        with pytest.raises(ConversionUnavailableError):
            ledger.deposit(account.id, gbp)
        with pytest.raises(ConversionUnavailableError):
            ledger.withdraw(account.id, gbp)
        with pytest.raises(ConversionUnavailableError):
            ledger.update_account_balance(account.id, gbp)

        assert ledger.get_account(account.id).balance == eur('10')
        assert len(ledger.get_statement(account.id)) == 1

    def test_same_currency_skips_converter(self):
        """The converter is not consulted for native-currency amounts"""
        converter = Mock(spec=CurrencyConverter)
        ledger = AccountLedger(InMemoryStorage(), converter)
        account = ledger.create_account(eur('1'))
        ledger.deposit(account.id, eur('2'))
        ledger.withdraw(account.id, eur('1'))

        converter.convert.assert_not_called()
        assert ledger.get_account(account.id).balance == eur('2')

    def test_operations_are_logged(self, ledger):
        records = []

        class Collect(logging.Handler):
            def emit(self, record):
                records.append(record)

        handler = Collect()
        ledger.logger.addHandler(handler)
        ledger.logger.setLevel(logging.INFO)
        try:
            account = ledger.create_account()
            ledger.deposit(account.id, eur('3'))
            with pytest.raises(InsufficientFundsError):
                ledger.withdraw(account.id, eur('4'))
        finally:
            ledger.logger.removeHandler(handler)

        actions = [getattr(r, 'action', None) for r in records]
        assert actions == ["create_account", "deposit", "withdraw"]
        assert records[-1].levelno == logging.WARNING
        assert records[1].resource == f"account:{account.id}"


class TestUpdateAccountBalance:
    """Exact balance updates through recorded deltas"""

    def test_update_up_and_down(self, ledger):
        account = ledger.create_account(eur('100.00'))

        updated = ledger.update_account_balance(account.id, eur('180.00'))
        assert updated.balance == eur('180.00')

        updated = ledger.update_account_balance(account.id, eur('140.00'))
        assert updated.balance == eur('140.00')

        statement = ledger.get_statement(account.id)
        assert [(op.operation_type, op.funds) for op in statement[1:]] == [
            (OperationType.DEPOSIT, eur('80.00')),
            (OperationType.WITHDRAWAL, eur('-40.00')),
        ]
        assert_ledger_consistent(ledger, account.id)

    def test_update_to_same_balance_records_nothing(self, ledger):
        account = ledger.create_account(eur('50.00'))

        updated = ledger.update_account_balance(account.id, eur('50.00'))

        assert updated.balance == eur('50.00')
        assert len(ledger.get_statement(account.id)) == 1

    def test_update_is_idempotent(self, ledger):
        account = ledger.create_account(eur('10'))
        ledger.update_account_balance(account.id, eur('33.3333'))
        ledger.update_account_balance(account.id, eur('33.3333'))

        assert len(ledger.get_statement(account.id)) == 2
        assert ledger.get_account(account.id).balance == eur('33.3333')

    def test_update_round_trip(self, ledger):
        """Going to B and back to A appends opposite operations"""
        account = ledger.create_account(eur('75'))

        ledger.update_account_balance(account.id, eur('20'))
        ledger.update_account_balance(account.id, eur('75'))

        statement = ledger.get_statement(account.id)
        assert len(statement) == 3
        assert statement[1].funds == -statement[2].funds
        assert ledger.get_account(account.id).balance == eur('75')

    def test_update_to_zero(self, ledger):
        account = ledger.create_account(eur('12.5'))
        assert ledger.update_account_balance(account.id, eur('0')).balance.is_zero()
        assert ledger.get_statement(account.id)[-1].funds == eur('-12.5')

    def test_update_with_foreign_target(self, ledger):
        """The target is converted before the delta is computed"""
        account = ledger.create_account(eur('1'))
        updated = ledger.update_account_balance(account.id, usd('10'))
        assert updated.balance == eur('5')
        assert ledger.get_statement(account.id)[-1].funds == eur('4')

    def test_negative_target_rejected(self, ledger):
        account = ledger.create_account(eur('1'))
        with pytest.raises(InvalidAmountError, match="cannot be negative"):
            ledger.update_account_balance(account.id, eur('-1'))

    def test_update_unknown_account(self, ledger):
        with pytest.raises(AccountNotFoundError):
            ledger.update_account_balance("missing", eur('1'))


class TestAtomicity:
    """Balance and operation history commit together"""

    def test_failed_operation_insert_rolls_back_balance(self, ledger, monkeypatch):
        account = ledger.create_account(eur('10'))

        def fail(operation):
            raise RuntimeError("disk full")

        monkeypatch.setattr(ledger.operations, "save", fail)

        with pytest.raises(RuntimeError):
            ledger.deposit(account.id, eur('5'))
        with pytest.raises(RuntimeError):
            ledger.update_account_balance(account.id, eur('1'))

        monkeypatch.undo()
        assert ledger.get_account(account.id).balance == eur('10')
        assert_ledger_consistent(ledger, account.id)

    def test_failed_initial_deposit_discards_account(self, ledger, monkeypatch):
        def fail(operation):
            raise RuntimeError("disk full")

        monkeypatch.setattr(ledger.operations, "save", fail)
        with pytest.raises(RuntimeError):
            ledger.create_account(eur('10'))

        assert ledger.get_all_accounts() == []

    def test_failed_delete_keeps_operations(self, ledger, monkeypatch):
        account = ledger.create_account(eur('10'))

        def fail(account_id):
            raise RuntimeError("locked")

        monkeypatch.setattr(ledger.accounts, "delete_by_id", fail)
        with pytest.raises(RuntimeError):
            ledger.delete_account(account.id)

        monkeypatch.undo()
        assert len(ledger.get_statement(account.id)) == 1
        assert ledger.get_account(account.id).balance == eur('10')


class TestConcurrency:
    """Per-account serialization"""

    def test_concurrent_deposits(self, ledger):
        account = ledger.create_account()

        def deposit():
            for _ in range(10):
                ledger.deposit(account.id, eur('1.00'))

        threads = [threading.Thread(target=deposit) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert ledger.get_account(account.id).balance == eur('80.00')
        assert len(ledger.get_statement(account.id)) == 80
        assert_ledger_consistent(ledger, account.id)

    def test_racing_withdrawals_never_overdraw(self, ledger):
        account = ledger.create_account(eur('100'))
        results = []
        results_lock = threading.Lock()

        def withdraw():
            try:
                ledger.withdraw(account.id, eur('30'))
                outcome = "ok"
            except InsufficientFundsError:
                outcome = "rejected"
            with results_lock:
                results.append(outcome)

        threads = [threading.Thread(target=withdraw) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count("ok") == 3
        assert results.count("rejected") == 7
        assert ledger.get_account(account.id).balance == eur('10')
        assert_ledger_consistent(ledger, account.id)

    def test_same_account_waits_for_lock(self):
        storage = InMemoryStorage()
        ledger = AccountLedger(storage, RateTableConverter())
        account = ledger.create_account()
        done = threading.Event()

        def deposit():
            ledger.deposit(account.id, eur('1'))
            done.set()

        with storage.record_lock("accounts", account.id):
            worker = threading.Thread(target=deposit)
            worker.start()
            assert not done.wait(timeout=0.2)
            assert ledger.get_account(account.id).balance.is_zero()

        assert done.wait(timeout=5)
        worker.join()
        assert ledger.get_account(account.id).balance == eur('1')

    def test_different_accounts_do_not_block(self):
        storage = InMemoryStorage()
        ledger = AccountLedger(storage, RateTableConverter())
        first = ledger.create_account()
        second = ledger.create_account()
        done = threading.Event()

        def deposit():
            ledger.deposit(second.id, eur('1'))
            done.set()

        with storage.record_lock("accounts", first.id):
            worker = threading.Thread(target=deposit)
            worker.start()
            assert done.wait(timeout=5)
        worker.join()
        assert ledger.get_account(second.id).balance == eur('1')
