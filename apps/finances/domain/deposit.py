"""
Security Deposit Escrow

The deposit is captured together with the rental charge and then held
by the platform until staff decide what happens to it.

States: NONE -> HELD -> {CHARGED, RELEASED}

- hold: NONE -> HELD, only once the payment is completed
- charge: HELD -> CHARGED, keeps ``amount <= held`` and returns the rest
- release: HELD -> RELEASED, returns everything; repeating it is a no-op

Money movement for charge/release is claimed first (``pending_action``)
so two concurrent settlements of the same deposit cannot both reach the
provider.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from apps.finances.domain.events import DepositCharged, DepositHeld, DepositReleased
from shared.domain.base import Aggregate, utcnow
from shared.domain.exceptions import (
    AlreadyHeld,
    InvalidAmount,
    InvalidTransition,
    NotHeld,
    SettlementInProgress,
)
from shared.domain.value_objects import Money


class DepositStatus(Enum):
    NONE = 'none'
    HELD = 'held'
    CHARGED = 'charged'
    RELEASED = 'released'


class DepositAction(Enum):
    CHARGE = 'charge'
    RELEASE = 'release'


@dataclass(eq=False, kw_only=True)
class SecurityDeposit(Aggregate):
    """One deposit per rental."""

    rental_id: UUID
    currency: str
    status: DepositStatus = DepositStatus.NONE
    held: Money = field(default=None)
    charged: Money = field(default=None)
    payment_id: Optional[UUID] = None
    provider_hold_ref: str = ''

    pending_action: Optional[DepositAction] = None
    pending_amount: Optional[Money] = None

    held_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    def __post_init__(self):
        if self.held is None:
            self.held = Money.zero(self.currency)
        if self.charged is None:
            self.charged = Money.zero(self.currency)

    @property
    def returned(self) -> Money:
        """Amount that goes (or went) back to the renter."""
        if self.status == DepositStatus.RELEASED:
            return self.held
        if self.status == DepositStatus.CHARGED:
            return self.held - self.charged
        return Money.zero(self.currency)

    def hold(self, amount: Money, payment_completed: bool, payment_id: UUID, hold_ref: str):
        """NONE -> HELD"""
        if self.status != DepositStatus.NONE:
            raise AlreadyHeld(rental_id=str(self.rental_id), status=self.status.value)
        if not payment_completed:
            raise InvalidTransition(
                "Deposit can only be held for a completed payment.",
                rental_id=str(self.rental_id),
            )
        if amount.is_zero:
            raise InvalidAmount("Deposit amount must be greater than zero.")

        self.status = DepositStatus.HELD
        self.held = amount
        self.payment_id = payment_id
        self.provider_hold_ref = hold_ref
        self.held_at = utcnow()
        self.touch()
        self.add_event(DepositHeld(rental_id=self.rental_id, amount=amount))

    # ===== Settlement claims =====

    def claim(self, action: DepositAction, amount: Optional[Money] = None):
        """
        Reserve the deposit for one settlement action

        Re-claiming with the same action and amount resumes an interrupted
        settlement; anything else while a claim is open is rejected.
        """
        if self.status != DepositStatus.HELD:
            raise NotHeld(rental_id=str(self.rental_id), status=self.status.value)

        if action is DepositAction.CHARGE:
            if amount is None or amount.is_zero:
                raise InvalidAmount("Charge amount must be greater than zero.")
            if amount > self.held:
                raise InvalidAmount(
                    f"Charge of {amount} exceeds the held deposit {self.held}",
                    held=str(self.held.amount),
                )
        else:
            amount = self.held

        if self.pending_action is not None:
            if self.pending_action is action and self.pending_amount == amount:
                return
            raise SettlementInProgress(
                rental_id=str(self.rental_id),
                pending_action=self.pending_action.value,
            )

        self.pending_action = action
        self.pending_amount = amount
        self.touch()

    def abandon_claim(self):
        self.pending_action = None
        self.pending_amount = None
        self.touch()

    # ===== Terminal transitions =====

    def charge(self, amount: Money):
        """HELD -> CHARGED; the remainder is returned to the renter."""
        if self.status != DepositStatus.HELD:
            raise NotHeld(rental_id=str(self.rental_id), status=self.status.value)
        if amount.is_zero or amount > self.held:
            raise InvalidAmount(f"Charge must be between 0 and the held deposit {self.held}")

        self.status = DepositStatus.CHARGED
        self.charged = amount
        self.settled_at = utcnow()
        self.abandon_claim()
        self.add_event(DepositCharged(
            rental_id=self.rental_id,
            charged=amount,
            returned=self.held - amount,
        ))

    def release(self) -> bool:
        """
        HELD -> RELEASED

        Returns False when the deposit is already released.
        """
        if self.status == DepositStatus.RELEASED:
            return False
        if self.status != DepositStatus.HELD:
            raise NotHeld(rental_id=str(self.rental_id), status=self.status.value)

        self.status = DepositStatus.RELEASED
        self.settled_at = utcnow()
        self.abandon_claim()
        self.add_event(DepositReleased(rental_id=self.rental_id, amount=self.held))
        return True
