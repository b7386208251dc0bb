"""
Rental pricing

The rate family is chosen by the renter's rental type and must be set on
the item:

- hourly: ceil(hours) * hourly_rate
- daily:  max(1, whole days) * daily_rate
- weekly: max(1, ceil(whole days / 7)) * weekly_rate
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
import math

from apps.items.domain.availability import ItemSnapshot
from shared.domain.exceptions import InvalidRentalType
from shared.domain.value_objects import Interval, Money


class RentalType(Enum):
    HOURLY = 'hourly'
    DAILY = 'daily'
    WEEKLY = 'weekly'

    @classmethod
    def parse(cls, value) -> 'RentalType':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise InvalidRentalType(
                f"Unknown rental type {value!r}; expected one of hourly, daily, weekly",
                rental_type=str(value),
            ) from None


@dataclass(frozen=True)
class Quote:
    rental_type: RentalType
    units: int
    unit_rate: Money
    total: Money


def billable_units(rental_type: RentalType, period: Interval) -> int:
    if rental_type is RentalType.HOURLY:
        return max(1, math.ceil(period.hours))
    if rental_type is RentalType.DAILY:
        return max(1, period.whole_days)
    return max(1, math.ceil(period.whole_days / 7))


def _rate_for(item: ItemSnapshot, rental_type: RentalType):
    return {
        RentalType.HOURLY: item.hourly_rate,
        RentalType.DAILY: item.daily_rate,
        RentalType.WEEKLY: item.weekly_rate,
    }[rental_type]


def quote(item: ItemSnapshot, rental_type: RentalType, period: Interval) -> Quote:
    rate = _rate_for(item, rental_type)
    if rate is None:
        raise InvalidRentalType(
            f"Item {item.id} has no {rental_type.value} rate",
            rental_type=rental_type.value,
        )

    unit_rate = Money(Decimal(rate), item.currency)
    units = billable_units(rental_type, period)
    return Quote(
        rental_type=rental_type,
        units=units,
        unit_rate=unit_rate,
        total=unit_rate * units,
    )


def deposit_for(item: ItemSnapshot) -> Money:
    if not item.security_deposit:
        return Money.zero(item.currency)
    return Money(Decimal(item.security_deposit), item.currency)
