"""
Currency and Money Module

ISO 4217 currency codes and an immutable Money type with fixed currency
precision. NEVER uses float for monetary values: amounts are parsed into
Decimal at the boundary and excess precision is rejected, not rounded away.
"""

from decimal import Decimal, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from .errors import InvalidInputError

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    INR = ("INR", 2)  # Indian Rupee
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    GBP = ("GBP", 2)  # British Pound
    JPY = ("JPY", 0)  # Japanese Yen

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.precision)


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and exact precision.
    Construction fails if the amount carries more decimal places than the
    currency allows.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if isinstance(self.amount, float):
            raise TypeError("Money amounts must not be floats")
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))
        if not self.amount.is_finite():
            raise ValueError(f"Money amount must be finite, got {self.amount}")

        quantized = self.amount.quantize(self.currency.quantum)
        if quantized != self.amount:
            raise ValueError(
                f"{self.amount} has more than {self.currency.precision} decimal places "
                f"for {self.currency.code}"
            )
        object.__setattr__(self, 'amount', quantized)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal(0), currency)

    def _check_currency(self, other: 'Money') -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Expected Money, got {type(other).__name__}")
        if self.currency != other.currency:
            raise ValueError(f"Currency mismatch: {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other)
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency.code))

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other)
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other)
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other)
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other)
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        return self.amount == 0

    def is_positive(self) -> bool:
        return self.amount > 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"

    def __str__(self) -> str:
        return f"{self.amount:.{self.currency.precision}f}"


def parse_amount(value: Any, currency: Currency, field: str = "amount") -> Money:
    """
    Strictly parse a client-supplied amount into Money.

    Accepts Decimal, int and numeric strings. Floats, booleans, blanks,
    non-finite values, excess precision and non-positive amounts are all
    rejected with InvalidInputError.
    """
    if value is None or isinstance(value, (bool, float)):
        raise InvalidInputError(
            f"{field.capitalize()} must be given as a decimal string or integer.", field=field
        )

    if isinstance(value, str):
        value = value.strip()
        if not value:
            raise InvalidInputError(f"{field.capitalize()} is required.", field=field)

    try:
        decimal_value = value if isinstance(value, Decimal) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidInputError(f"{field.capitalize()} must be a number.", field=field)

    try:
        money = Money(decimal_value, currency)
    except ValueError as exc:
        raise InvalidInputError(str(exc), field=field)

    if not money.is_positive():
        raise InvalidInputError(f"{field.capitalize()} must be a positive number.", field=field)
    return money


def money_from_storage(amount: Union[str, Decimal], currency_code: str) -> Money:
    """Rebuild Money from its stored string representation"""
    return Money(Decimal(amount), Currency[currency_code])
