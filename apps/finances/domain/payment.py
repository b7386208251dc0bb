"""
Payment Aggregate

One payment attempt for a rental. The amount charged is the rental total
plus the security deposit; both share a single provider authorization and
are separated logically through ``deposit``.

State transitions:
- PENDING -> COMPLETED (provider reported success)
- PENDING -> FAILED (provider reported a decline)
- FAILED -> COMPLETED (renter completed the same intent with another method)
- CANCELLED -> COMPLETED (capture raced the void; the money is real and gets refunded)
- PENDING|FAILED -> CANCELLED (hold voided)
- COMPLETED -> REFUNDED (rental portion fully refunded, or the whole charge
  for a capture that belongs to a superseded attempt)

A COMPLETED payment is never moved back to FAILED or PENDING.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from apps.finances.domain.events import PaymentCompleted, PaymentFailed, PaymentRefunded
from shared.domain.base import Aggregate, utcnow
from shared.domain.exceptions import InvalidAmount, InvalidTransition
from shared.domain.value_objects import Money


class PaymentStatus(Enum):
    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'
    REFUNDED = 'refunded'
    CANCELLED = 'cancelled'


@dataclass(frozen=True)
class RiskAssessment:
    """Provider fraud scoring attached to a successful charge."""
    score: Optional[int] = None
    level: str = ''


@dataclass(eq=False, kw_only=True)
class Payment(Aggregate):
    """
    Payment Aggregate Root

    Key invariants:
    - ``amount`` is strictly positive and ``deposit <= amount``
    - Refunds never exceed the rental portion (``amount - deposit``)
    - Only a capture that cannot be applied to its rental is returned
      whole, deposit included (``record_full_refund``)
    """

    rental_id: UUID
    attempt: int
    amount: Money
    deposit: Money
    status: PaymentStatus = PaymentStatus.PENDING
    provider_intent_id: Optional[str] = None
    refunded: Money = field(default=None)

    failure_code: str = ''
    failure_message: str = ''
    risk: RiskAssessment = field(default_factory=RiskAssessment)

    paid_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount.is_zero:
            raise InvalidAmount("Payment amount must be greater than zero.")
        if self.deposit.currency != self.amount.currency:
            raise InvalidAmount("Deposit currency must match the payment currency.")
        if self.deposit > self.amount:
            raise InvalidAmount("Deposit cannot exceed the payment amount.")
        if self.refunded is None:
            self.refunded = Money.zero(self.amount.currency)

    @property
    def currency(self) -> str:
        return self.amount.currency

    @property
    def rental_amount(self) -> Money:
        """Charge for the rental itself, without the deposit."""
        return self.amount - self.deposit

    @property
    def refundable(self) -> Money:
        if self.refunded >= self.rental_amount:
            return Money.zero(self.currency)
        return self.rental_amount - self.refunded

    @property
    def is_completed(self) -> bool:
        return self.status == PaymentStatus.COMPLETED

    @property
    def was_captured(self) -> bool:
        """Money reached the platform (even if part of it went back since)."""
        return self.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)

    def attach_intent(self, intent_id: str):
        if self.provider_intent_id and self.provider_intent_id != intent_id:
            raise InvalidTransition(
                f"Payment {self.id} is already linked to intent {self.provider_intent_id}",
                payment_id=str(self.id),
            )
        self.provider_intent_id = intent_id
        self.touch()

    def mark_completed(self, risk: Optional[RiskAssessment] = None, paid_at: Optional[datetime] = None) -> bool:
        """
        Record a successful charge

        Returns False (no change) when the payment is already settled in any
        way; duplicate or reordered success notifications land here.
        """
        if self.status not in (PaymentStatus.PENDING, PaymentStatus.FAILED, PaymentStatus.CANCELLED):
            return False

        self.status = PaymentStatus.COMPLETED
        self.paid_at = paid_at or utcnow()
        self.failure_code = ''
        self.failure_message = ''
        if risk is not None:
            self.risk = risk
        self.touch()

        self.add_event(PaymentCompleted(
            payment_id=self.id,
            rental_id=self.rental_id,
            amount=self.amount,
            provider_intent_id=self.provider_intent_id or '',
        ))
        return True

    def mark_failed(self, code: str, message: str, failed_at: Optional[datetime] = None) -> bool:
        """
        Record a declined charge

        Only a PENDING payment can fail; a failure that arrives after the
        payment completed or was voided is stale and ignored.
        """
        if self.status != PaymentStatus.PENDING:
            return False

        self.status = PaymentStatus.FAILED
        self.failure_code = code or 'unknown'
        self.failure_message = message or 'Payment failed'
        self.failed_at = failed_at or utcnow()
        self.touch()

        self.add_event(PaymentFailed(
            payment_id=self.id,
            rental_id=self.rental_id,
            failure_code=self.failure_code,
            failure_message=self.failure_message,
        ))
        return True

    def mark_cancelled(self) -> bool:
        if self.status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
            return False
        self.status = PaymentStatus.CANCELLED
        self.touch()
        return True

    def ensure_refundable(self, amount: Money, reserved: Optional[Money] = None):
        """Validate a refund of ``amount`` given refunds already in flight."""
        if self.status != PaymentStatus.COMPLETED:
            raise InvalidTransition(
                f"Only completed payments can be refunded (payment is {self.status.value})",
                payment_id=str(self.id),
                status=self.status.value,
            )
        if amount.is_zero:
            raise InvalidAmount("Refund amount must be greater than zero.")
        available = self.refundable
        if reserved is not None:
            available = Money.zero(self.currency) if reserved >= available else available - reserved
        if amount > available:
            raise InvalidAmount(
                f"Refund of {amount} exceeds the refundable rental amount {available}",
                refundable=str(available.amount),
            )

    def record_refund(self, amount: Money, provider_reference: Optional[str] = None):
        """Apply a refund that the provider has confirmed."""
        if self.status != PaymentStatus.COMPLETED:
            raise InvalidTransition(
                f"Only completed payments can be refunded (payment is {self.status.value})",
                payment_id=str(self.id),
                status=self.status.value,
            )
        if amount > self.refundable:
            raise InvalidAmount(f"Refund of {amount} exceeds the refundable rental amount {self.refundable}")

        self.refunded = self.refunded + amount
        self.refunded_at = utcnow()
        fully_refunded = self.refundable.is_zero
        if fully_refunded:
            self.status = PaymentStatus.REFUNDED
        self.touch()

        self.add_event(PaymentRefunded(
            payment_id=self.id,
            rental_id=self.rental_id,
            amount=amount,
            fully_refunded=fully_refunded,
            provider_reference=provider_reference,
        ))

    @property
    def unreturned(self) -> Money:
        """Captured money not yet refunded, deposit included."""
        return self.amount - self.refunded

    def record_full_refund(self, amount: Money, provider_reference: Optional[str] = None):
        """Apply a provider refund of everything still unreturned."""
        if self.status != PaymentStatus.COMPLETED:
            raise InvalidTransition(
                f"Only completed payments can be refunded (payment is {self.status.value})",
                payment_id=str(self.id),
                status=self.status.value,
            )
        if amount != self.unreturned:
            raise InvalidAmount(f"Full refund must return {self.unreturned}, got {amount}")

        self.refunded = self.amount
        self.refunded_at = utcnow()
        self.status = PaymentStatus.REFUNDED
        self.touch()

        self.add_event(PaymentRefunded(
            payment_id=self.id,
            rental_id=self.rental_id,
            amount=amount,
            fully_refunded=True,
            provider_reference=provider_reference,
        ))

    def mark_refunded_externally(self) -> bool:
        """
        The provider reports the whole charge refunded outside this service

        Local refunds already went through ``record_refund``; this only
        catches refunds issued from the provider dashboard.
        """
        if self.status != PaymentStatus.COMPLETED:
            return False
        remaining = self.refundable
        if remaining.is_zero:
            return False
        self.record_refund(remaining)
        return True
