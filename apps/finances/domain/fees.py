"""
Fee Calculator

Pure functions splitting a rental charge between the platform and the
item owner. The platform fee is ``round(total * rate)`` to the cent,
rounding half up, and the owner receives exactly the remainder, so the
two parts always add up to the total.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Mapping, Optional

from shared.domain.base import ValueObject
from shared.domain.exceptions import ValidationFailed
from shared.domain.value_objects import Money


@dataclass(frozen=True)
class FeeSplit(ValueObject):
    """
    Result of splitting a rental total

    ``deposit`` is the refundable security deposit collected on top of the
    total; it never takes part in the fee split.
    """
    total: Money
    platform_fee: Money
    owner_payout: Money
    deposit: Optional[Money] = field(default=None)

    @property
    def charge_total(self) -> Money:
        """What the renter is charged: rental total plus deposit."""
        return self.total + self.deposit if self.deposit is not None else self.total


def compute_split(total: Money, platform_fee_rate, deposit: Optional[Money] = None) -> FeeSplit:
    rate = Decimal(str(platform_fee_rate))
    if rate < 0 or rate > 1:
        raise ValidationFailed(f"Platform fee rate must be between 0 and 1, got {rate}")
    if deposit is not None and deposit.currency != total.currency:
        raise ValidationFailed("Deposit and total must use the same currency")

    platform_fee = total * rate
    return FeeSplit(
        total=total,
        platform_fee=platform_fee,
        owner_payout=total - platform_fee,
        deposit=deposit,
    )


def rate_for_category(category: str, default_rate, overrides: Optional[Mapping[str, Decimal]] = None) -> Decimal:
    """Platform fee rate for an item category, falling back to the default."""
    if overrides and category in overrides:
        return Decimal(str(overrides[category]))
    return Decimal(str(default_rate))
