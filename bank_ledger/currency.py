"""
Multi-Currency Support Module

Handles ISO 4217 currency codes, exchange rates, and Decimal precision
for account balances and operation amounts. NEVER uses float for monetary values.
"""

from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple
from enum import Enum

from .exceptions import ConversionUnavailableError, CurrencyMismatchError

# Set global decimal context for financial precision
getcontext().prec = 28

# Stored scale of every amount; wider than any minor unit so conversions survive rounding
AMOUNT_SCALE = 4
_QUANTUM = Decimal(1).scaleb(-AMOUNT_SCALE)


class Currency(Enum):
    """ISO 4217 Currency Codes with minor-unit digits"""
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    JPY = ("JPY", 0)
    CHF = ("CHF", 2)
    CAD = ("CAD", 2)
    AUD = ("AUD", 2)
    NZD = ("NZD", 2)
    SEK = ("SEK", 2)
    NOK = ("NOK", 2)
    DKK = ("DKK", 2)
    PLN = ("PLN", 2)
    CZK = ("CZK", 2)
    HUF = ("HUF", 2)
    RON = ("RON", 2)
    BGN = ("BGN", 2)
    ISK = ("ISK", 0)
    TRY = ("TRY", 2)
    CNY = ("CNY", 2)
    HKD = ("HKD", 2)
    SGD = ("SGD", 2)
    KRW = ("KRW", 0)
    INR = ("INR", 2)
    IDR = ("IDR", 2)
    MYR = ("MYR", 2)
    PHP = ("PHP", 2)
    THB = ("THB", 2)
    ZAR = ("ZAR", 2)
    MXN = ("MXN", 2)
    BRL = ("BRL", 2)
    ILS = ("ILS", 2)
    KWD = ("KWD", 3)
    BHD = ("BHD", 3)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """
        Parse a 3-letter ISO 4217 code (case-insensitive)

        Raises:
            ValueError: If the code is malformed or not supported
        """
        if not isinstance(code, str) or len(code.strip()) != 3:
            raise ValueError(f"Currency must be a 3-letter ISO code, got {code!r}")
        try:
            return cls[code.strip().upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency code: {code!r}") from None


def quantize_amount(value: Decimal) -> Decimal:
    """Round a Decimal to the stored amount scale"""
    return value.quantize(_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and fixed stored scale.
    Arithmetic never converts between currencies implicitly.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))
        object.__setattr__(self, 'amount', quantize_amount(self.amount))

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def _require_same_currency(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise CurrencyMismatchError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._require_same_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise CurrencyMismatchError(f"Cannot subtract {other.currency.code} from {self.currency.code}")
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __lt__(self, other: 'Money') -> bool:
        self._require_same_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._require_same_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._require_same_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._require_same_currency(other, "compare")
        return self.amount >= other.amount

    def compare_to(self, other: 'Money') -> int:
        """Return -1, 0 or 1 like a three-way comparison"""
        self._require_same_currency(other, "compare")
        if self.amount < other.amount:
            return -1
        if self.amount > other.amount:
            return 1
        return 0

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def convert_to(self, to_currency: Currency, converter: 'CurrencyConverter') -> 'Money':
        """
        Express this amount in another currency.

        Same-currency conversion returns self without consulting the converter.
        """
        if self.currency == to_currency:
            return self
        return converter.convert(self, to_currency)

    def to_string(self) -> str:
        """Format for display at the currency's minor-unit precision"""
        display = self.amount.quantize(Decimal(1).scaleb(-self.currency.precision), rounding=ROUND_HALF_UP)
        return f"{self.currency.code} {display:,.{self.currency.precision}f}"

    def __str__(self) -> str:
        return self.to_string()


@dataclass(frozen=True)
class ExchangeRate:
    """Units of ``to_currency`` per one unit of ``from_currency``"""
    from_currency: Currency
    to_currency: Currency
    rate: Decimal

    def __post_init__(self):
        if not isinstance(self.rate, Decimal):
            object.__setattr__(self, 'rate', Decimal(str(self.rate)))
        if self.rate <= Decimal('0'):
            raise ValueError(
                f"Exchange rate {self.from_currency.code}/{self.to_currency.code} must be positive"
            )

    def inverse(self) -> 'ExchangeRate':
        return ExchangeRate(self.to_currency, self.from_currency, Decimal('1') / self.rate)


class CurrencyConverter(ABC):
    """
    Converts Money into a target currency.

    Implementations must return the same result for the same input for the
    duration of a ledger operation.
    """

    @abstractmethod
    def get_rate(self, from_currency: Currency, to_currency: Currency) -> Optional[ExchangeRate]:
        """Get exchange rate for currency pair, or None if unknown"""
        pass

    def convert(self, money: Money, to_currency: Currency) -> Money:
        """
        Convert money from one currency to another

        Raises:
            ConversionUnavailableError: If no exchange rate available
        """
        if money.currency == to_currency:
            return money

        rate = self.get_rate(money.currency, to_currency)
        if not rate:
            raise ConversionUnavailableError(money.currency.code, to_currency.code)
        return Money(money.amount * rate.rate, to_currency)


class RateTableConverter(CurrencyConverter):
    """Converter backed by an in-process table of exchange rates"""

    def __init__(self):
        self._rates: Dict[Tuple[Currency, Currency], ExchangeRate] = {}

    @classmethod
    def from_mapping(cls, rates: Mapping[str, object]) -> 'RateTableConverter':
        """
        Build a converter from ``{"FROM/TO": rate}`` pairs, e.g. ``{"USD/EUR": "0.92"}``.

        Raises:
            ValueError: If a pair or a rate cannot be parsed
        """
        converter = cls()
        for pair, value in rates.items():
            parts = pair.split("/")
            if len(parts) != 2:
                raise ValueError(f"Exchange rate key must look like 'USD/EUR', got {pair!r}")
            converter.set_rate(ExchangeRate(
                Currency.from_code(parts[0]), Currency.from_code(parts[1]), Decimal(str(value))
            ))
        return converter

    def set_rate(self, rate: ExchangeRate) -> None:
        """Set exchange rate for currency pair and its reverse"""
        self._rates[(rate.from_currency, rate.to_currency)] = rate
        self._rates[(rate.to_currency, rate.from_currency)] = rate.inverse()

    def get_rate(self, from_currency: Currency, to_currency: Currency) -> Optional[ExchangeRate]:
        if from_currency == to_currency:
            return ExchangeRate(from_currency, to_currency, Decimal('1'))
        return self._rates.get((from_currency, to_currency))
