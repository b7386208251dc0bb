"""
Rental Domain Entities

Core business entities for the rental domain:
- Rental: Main aggregate representing a renter's request for an item
- RentalStatus: FSM states for the rental lifecycle
- SettlementStatus: Money movement still owed after a cancellation
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from apps.finances.domain.fees import FeeSplit
from apps.rentals.domain.events import (
    RentalApproved,
    RentalCancelled,
    RentalCompleted,
    RentalPaymentFailed,
    RentalRejected,
    RentalRequested,
)
from apps.rentals.domain.pricing import RentalType
from shared.domain.base import Aggregate, utcnow
from shared.domain.exceptions import (
    InvalidTransition,
    PaymentRetriesExhausted,
    PermissionDenied,
)
from shared.domain.value_objects import Actor, Interval, Money


class RentalStatus(Enum):
    """
    Rental Status Finite State Machine

    State transitions:
    - PENDING -> APPROVED (owner approved, or payment captured)
    - PENDING -> REJECTED (owner rejected)
    - PENDING -> CANCELLED (renter withdrew, owner cancelled, or hold expired)
    - PENDING/APPROVED -> PAYMENT_FAILED (provider reported a failed payment)
    - PAYMENT_FAILED -> PENDING (renter re-attempts payment, bounded)
    - PAYMENT_FAILED -> APPROVED (late success of the current attempt)
    - PAYMENT_FAILED -> CANCELLED (retries exhausted or abandoned)
    - APPROVED -> COMPLETED (rental finished, payment completed)
    - APPROVED -> CANCELLED (either party cancelled)
    """
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    PAYMENT_FAILED = 'payment_failed'


TERMINAL_STATUSES = frozenset({RentalStatus.REJECTED, RentalStatus.COMPLETED, RentalStatus.CANCELLED})

ACTIVE_STATUSES = frozenset({RentalStatus.PENDING, RentalStatus.APPROVED})

ALLOWED_TRANSITIONS = {
    RentalStatus.PENDING: {
        RentalStatus.APPROVED,
        RentalStatus.REJECTED,
        RentalStatus.CANCELLED,
        RentalStatus.PAYMENT_FAILED,
    },
    RentalStatus.APPROVED: {
        RentalStatus.COMPLETED,
        RentalStatus.CANCELLED,
        RentalStatus.PAYMENT_FAILED,
    },
    RentalStatus.PAYMENT_FAILED: {
        RentalStatus.PENDING,
        RentalStatus.APPROVED,
        RentalStatus.CANCELLED,
    },
    RentalStatus.REJECTED: set(),
    RentalStatus.COMPLETED: set(),
    RentalStatus.CANCELLED: set(),
}


class SettlementStatus(Enum):
    """Whether a cancelled rental still owes the renter money back."""
    NOT_REQUIRED = 'not_required'
    PENDING = 'pending'
    SETTLED = 'settled'


class Decision(Enum):
    APPROVE = 'approve'
    REJECT = 'reject'


@dataclass(eq=False, kw_only=True)
class Rental(Aggregate):
    """
    Rental Aggregate Root

    Represents a renter's booking of an item for ``period``.

    Key invariants:
    - The period is a valid half-open interval
    - Terminal statuses (REJECTED, COMPLETED, CANCELLED) are never left
    - A cancelled rental with a captured payment is not settled until the
      refund and deposit release went through
    """

    item_id: int
    renter_id: int
    owner_id: int
    rental_type: RentalType
    period: Interval
    total: Money

    status: RentalStatus = RentalStatus.PENDING
    payment_attempts: int = 0
    split: Optional[FeeSplit] = None
    settlement_status: SettlementStatus = SettlementStatus.NOT_REQUIRED

    reason: str = ''
    decided_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def request(
        cls,
        *,
        rental_id: UUID,
        item_id: int,
        renter_id: int,
        owner_id: int,
        rental_type: RentalType,
        period: Interval,
        total: Money,
    ) -> 'Rental':
        """Create a PENDING rental. Availability is checked by the caller."""
        if renter_id == owner_id:
            raise PermissionDenied("Owners cannot rent their own items.")

        rental = cls(
            id=rental_id,
            item_id=item_id,
            renter_id=renter_id,
            owner_id=owner_id,
            rental_type=rental_type,
            period=period,
            total=total,
        )
        rental.add_event(RentalRequested(
            rental_id=rental.id,
            item_id=item_id,
            renter_id=renter_id,
            owner_id=owner_id,
            period=period,
            total=total,
        ))
        return rental

    # ===== Guards =====

    def _transition(self, target: RentalStatus):
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Cannot move rental from {self.status.value} to {target.value}",
                rental_id=str(self.id),
                status=self.status.value,
            )
        self.status = target
        self.touch()

    def is_party(self, actor: Actor) -> bool:
        return actor.is_staff or actor.user_id in (self.renter_id, self.owner_id)

    def can_view(self, actor: Actor) -> bool:
        return self.is_party(actor)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        """Active rentals occupy the item's calendar."""
        return self.status in ACTIVE_STATUSES

    # ===== Owner decision =====

    def decide(self, actor: Actor, decision: Decision, reason: str = ''):
        """
        Approve or reject (PENDING -> APPROVED | REJECTED)

        Only the item owner may decide.
        Events: RentalApproved or RentalRejected
        """
        if actor.user_id != self.owner_id:
            raise PermissionDenied("Only the item owner can decide on this rental.")
        if self.status != RentalStatus.PENDING:
            raise InvalidTransition(
                f"Cannot decide on a rental in status {self.status.value}. Rental must be PENDING.",
                rental_id=str(self.id),
                status=self.status.value,
            )

        self.decided_at = utcnow()
        if decision is Decision.APPROVE:
            self._transition(RentalStatus.APPROVED)
            self.add_event(RentalApproved(
                rental_id=self.id, item_id=self.item_id, renter_id=self.renter_id,
            ))
        else:
            self._transition(RentalStatus.REJECTED)
            self.reason = reason
            self.add_event(RentalRejected(
                rental_id=self.id, item_id=self.item_id, renter_id=self.renter_id, reason=reason,
            ))

    # ===== Cancellation / expiry =====

    def cancel(self, actor: Actor, reason: str = '', payment_captured: bool = False):
        """
        Cancel (PENDING | APPROVED | PAYMENT_FAILED -> CANCELLED)

        When the payment was captured the rental stays in settlement until
        the compensating refund has been made.
        Events: RentalCancelled
        """
        if not self.is_party(actor):
            raise PermissionDenied("Only the renter, the owner or staff can cancel this rental.")

        old_status = self.status
        self._transition(RentalStatus.CANCELLED)
        self.cancelled_at = utcnow()
        self.reason = reason
        self.settlement_status = (
            SettlementStatus.PENDING if payment_captured else SettlementStatus.NOT_REQUIRED
        )

        self.add_event(RentalCancelled(
            rental_id=self.id,
            item_id=self.item_id,
            cancelled_by=actor.user_id,
            old_status=old_status.value,
            reason=reason,
            requires_settlement=payment_captured,
        ))

    def expire(self, payment_captured: bool = False) -> bool:
        """
        Expire a stale hold

        No-op (returns False) for terminal rentals and for approved rentals
        whose payment was captured.
        """
        if self.is_terminal:
            return False
        if self.status == RentalStatus.APPROVED and payment_captured:
            return False

        self.cancel(Actor.system(), reason='Payment hold expired', payment_captured=payment_captured)
        return True

    def require_settlement(self):
        """A capture arrived after the rental ended without being paid for."""
        if self.status in (RentalStatus.CANCELLED, RentalStatus.REJECTED):
            self.settlement_status = SettlementStatus.PENDING
            self.touch()

    def mark_settled(self):
        if self.settlement_status == SettlementStatus.PENDING:
            self.settlement_status = SettlementStatus.SETTLED
            self.touch()

    # ===== Completion =====

    def complete(self, actor: Actor, payment_completed: bool, split: FeeSplit):
        """
        Complete (APPROVED -> COMPLETED)

        Requires a completed payment; records the platform fee split.
        Events: RentalCompleted
        """
        if actor.user_id != self.owner_id and not actor.is_staff:
            raise PermissionDenied("Only the item owner or staff can complete this rental.")
        if self.status != RentalStatus.APPROVED:
            raise InvalidTransition(
                f"Cannot complete rental from status {self.status.value}. Rental must be APPROVED.",
                rental_id=str(self.id),
                status=self.status.value,
            )
        if not payment_completed:
            raise InvalidTransition(
                "Cannot complete rental before its payment is completed.",
                rental_id=str(self.id),
                status=self.status.value,
            )

        self._transition(RentalStatus.COMPLETED)
        self.completed_at = utcnow()
        self.split = split
        self.add_event(RentalCompleted(
            rental_id=self.id,
            item_id=self.item_id,
            owner_id=self.owner_id,
            platform_fee=split.platform_fee,
            owner_payout=split.owner_payout,
        ))

    # ===== Payment-driven transitions =====

    def start_payment_attempt(self, max_attempts: int):
        """Count a new payment attempt; only PENDING or APPROVED rentals can pay."""
        if self.status not in ACTIVE_STATUSES:
            raise InvalidTransition(
                f"Cannot pay for a rental in status {self.status.value}",
                rental_id=str(self.id),
                status=self.status.value,
            )
        if self.payment_attempts >= max_attempts:
            raise PaymentRetriesExhausted(
                attempts=self.payment_attempts, max_attempts=max_attempts,
            )
        self.payment_attempts += 1
        self.touch()

    def payment_succeeded(self) -> bool:
        """
        Move forward after a captured payment

        PENDING -> APPROVED and PAYMENT_FAILED -> APPROVED; APPROVED stays.
        Returns False when the rental can no longer accept the payment.
        """
        if self.status == RentalStatus.APPROVED:
            return True
        if self.status not in (RentalStatus.PENDING, RentalStatus.PAYMENT_FAILED):
            return False

        self._transition(RentalStatus.APPROVED)
        self.add_event(RentalApproved(
            rental_id=self.id, item_id=self.item_id, renter_id=self.renter_id, by_payment=True,
        ))
        return True

    def payment_failed(self) -> bool:
        """PENDING | APPROVED -> PAYMENT_FAILED; other statuses are left alone."""
        if self.status not in ACTIVE_STATUSES:
            return False

        self._transition(RentalStatus.PAYMENT_FAILED)
        self.add_event(RentalPaymentFailed(
            rental_id=self.id, renter_id=self.renter_id, attempts=self.payment_attempts,
        ))
        return True

    def retry_payment(self, actor: Actor, max_attempts: int):
        """
        Re-open a failed rental for another payment attempt (PAYMENT_FAILED -> PENDING)

        Raises PaymentRetriesExhausted once ``max_attempts`` were used; the
        caller then abandons the rental.
        """
        if actor.user_id != self.renter_id and not actor.is_staff:
            raise PermissionDenied("Only the renter can retry the payment.")
        if self.status != RentalStatus.PAYMENT_FAILED:
            raise InvalidTransition(
                f"Cannot retry payment from status {self.status.value}. Rental must be PAYMENT_FAILED.",
                rental_id=str(self.id),
                status=self.status.value,
            )
        if self.payment_attempts >= max_attempts:
            raise PaymentRetriesExhausted(
                attempts=self.payment_attempts, max_attempts=max_attempts,
            )
        self._transition(RentalStatus.PENDING)

    def __str__(self):
        return f"Rental {self.id} ({self.status.value})"
