"""
Common Value Objects

Value objects used across multiple domains:
- Money: Represents monetary amounts with currency, always in whole minor units
- Interval: Represents a half-open time range [start, end)
- Actor: The user (or system job) performing an operation
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from shared.domain.base import ValueObject

CENT = Decimal('0.01')


def quantize_money(value) -> Decimal:
    """Round a numeric value to cents using round-half-up."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid monetary amount: {value!r}") from exc
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money(ValueObject):
    """
    Money value object

    Represents a non-negative monetary amount with currency.
    The amount is normalised to two decimal places on construction, so
    every Money instance is already expressed in whole cents.
    """
    amount: Decimal
    currency: str = 'USD'

    def __post_init__(self):
        object.__setattr__(self, 'amount', quantize_money(self.amount))
        if not self.currency or len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency!r}")
        object.__setattr__(self, 'currency', self.currency.upper())
        if self.amount < 0:
            raise ValueError("Amount cannot be negative")

    @classmethod
    def zero(cls, currency: str = 'USD') -> 'Money':
        return cls(Decimal('0'), currency)

    @classmethod
    def from_minor_units(cls, cents: int, currency: str = 'USD') -> 'Money':
        return cls(Decimal(cents) / 100, currency)

    @property
    def minor_units(self) -> int:
        """Amount in cents, as payment providers expect it."""
        return int(self.amount * 100)

    @property
    def is_zero(self) -> bool:
        return self.amount == 0

    def _check_currency(self, other: 'Money'):
        if not isinstance(other, Money):
            raise TypeError("Can only combine Money with Money")
        if self.currency != other.currency:
            raise ValueError(
                f"Cannot combine different currencies: {self.currency} and {other.currency}"
            )

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other)
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, factor) -> 'Money':
        """Multiply by a number; the product is rounded half-up to cents."""
        if isinstance(factor, bool) or not isinstance(factor, (int, float, Decimal)):
            raise TypeError("Can only multiply Money by number")
        return Money(self.amount * Decimal(str(factor)), self.currency)

    __rmul__ = __mul__

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

    def __str__(self):
        return f"{self.amount:,.2f} {self.currency}"

    def __repr__(self):
        return f"Money({self.amount}, '{self.currency}')"


@dataclass(frozen=True)
class Interval(ValueObject):
    """
    Half-open time interval [start, end)

    Used for rental periods and owner availability windows.
    Both bounds must be timezone-aware datetimes.
    """
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("Interval bounds must be timezone-aware")
        if self.start >= self.end:
            raise ValueError(f"Start ({self.start}) must be before end ({self.end})")

    def overlaps_with(self, other: 'Interval') -> bool:
        """
        Check if this interval overlaps with another

        Overlap formula: start1 < end2 AND start2 < end1.
        Back-to-back intervals (self.end == other.start) do not overlap.
        """
        if not isinstance(other, Interval):
            raise TypeError("Can only check overlap with another Interval")
        return self.start < other.end and other.start < self.end

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def hours(self) -> Decimal:
        return Decimal(str(self.duration.total_seconds())) / Decimal('3600')

    @property
    def whole_days(self) -> int:
        """Number of complete 24h days (partial days are truncated)."""
        return self.duration.days

    def __str__(self):
        return f"{self.start.isoformat()} - {self.end.isoformat()}"

    def __repr__(self):
        return f"Interval({self.start.isoformat()}, {self.end.isoformat()})"


@dataclass(frozen=True)
class Actor(ValueObject):
    """Who is performing an operation: a user id plus the staff flag."""
    user_id: int
    is_staff: bool = False

    @classmethod
    def from_user(cls, user) -> 'Actor':
        return cls(user_id=user.pk, is_staff=bool(getattr(user, 'is_staff', False)))

    @classmethod
    def system(cls) -> 'Actor':
        """Background jobs act with staff rights and no user."""
        return cls(user_id=0, is_staff=True)
