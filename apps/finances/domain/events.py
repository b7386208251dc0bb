"""
Finance Domain Events

Events raised by payments and security deposits. Published after the
transaction that produced them commits.
"""

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from shared.domain.base import DomainEvent
from shared.domain.value_objects import Money


# ===== Payment Events =====

@dataclass
class PaymentCompleted(DomainEvent):
    """Event: Provider confirmed the charge (PENDING|FAILED -> COMPLETED)"""
    payment_id: UUID
    rental_id: UUID
    amount: Money
    provider_intent_id: str


@dataclass
class PaymentFailed(DomainEvent):
    """
    Event: Provider reported a failed charge (PENDING -> FAILED)

    Triggers:
    - Tell the renter the decline reason and how many attempts are left
    - Failed-payment monitoring
    """
    payment_id: UUID
    rental_id: UUID
    failure_code: str
    failure_message: str


@dataclass
class PaymentOrphaned(DomainEvent):
    """
    Event: Money was captured for a rental that can no longer use it

    The rental was cancelled, rejected, superseded by a newer attempt or
    its period was taken while it was waiting for a retry. Needs a refund
    decision by staff.
    """
    payment_id: UUID
    rental_id: UUID
    amount: Money
    rental_status: str


@dataclass
class PaymentRefunded(DomainEvent):
    """Event: Part or all of the rental charge went back to the renter"""
    payment_id: UUID
    rental_id: UUID
    amount: Money
    fully_refunded: bool
    provider_reference: Optional[str] = None


# ===== Security Deposit Events =====

@dataclass
class DepositHeld(DomainEvent):
    rental_id: UUID
    amount: Money


@dataclass
class DepositCharged(DomainEvent):
    """Event: Staff kept part or all of the deposit for damages"""
    rental_id: UUID
    charged: Money
    returned: Money


@dataclass
class DepositReleased(DomainEvent):
    rental_id: UUID
    amount: Money
