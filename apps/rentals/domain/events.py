"""
Rental Domain Events

Events that represent things that have happened in the rental domain.
These are published after successful transaction commits.
"""

from dataclasses import dataclass
from uuid import UUID

from shared.domain.base import DomainEvent
from shared.domain.value_objects import Interval, Money


@dataclass
class RentalRequested(DomainEvent):
    """
    Event: A renter requested an item (-> PENDING)

    Triggers:
    - Notify the item owner
    - Start hold expiry timer (Celery beat)
    """
    rental_id: UUID
    item_id: int
    renter_id: int
    owner_id: int
    period: Interval
    total: Money


@dataclass
class RentalApproved(DomainEvent):
    """Event: Owner approved the request or the payment captured (-> APPROVED)"""
    rental_id: UUID
    item_id: int
    renter_id: int
    by_payment: bool = False


@dataclass
class RentalRejected(DomainEvent):
    """Event: Owner rejected the request (PENDING -> REJECTED)"""
    rental_id: UUID
    item_id: int
    renter_id: int
    reason: str = ''


@dataclass
class RentalCancelled(DomainEvent):
    """
    Event: Rental cancelled by a party or expired by the system

    Triggers:
    - Refund the rental charge and release the deposit when payment was captured
    - Notify the other party
    """
    rental_id: UUID
    item_id: int
    cancelled_by: int
    old_status: str
    reason: str = ''
    requires_settlement: bool = False


@dataclass
class RentalCompleted(DomainEvent):
    """
    Event: Rental finished (APPROVED -> COMPLETED)

    Triggers:
    - Owner payout
    - Deposit review by an administrator
    """
    rental_id: UUID
    item_id: int
    owner_id: int
    platform_fee: Money
    owner_payout: Money


@dataclass
class RentalPaymentFailed(DomainEvent):
    """Event: The current payment attempt failed (-> PAYMENT_FAILED)"""
    rental_id: UUID
    renter_id: int
    attempts: int
