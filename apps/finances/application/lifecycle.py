"""
Payment Lifecycle

Use cases that move a rental's money:
- create_hold: open a provider payment hold for rental total + deposit
- retry_payment: re-open a PAYMENT_FAILED rental for another attempt
- reconcile: apply a verified provider notification exactly once
- refund: return part of the rental charge (never the deposit)

Rule for every use case: local state is claimed inside a short transaction,
the provider is called with no lock or transaction held, and the outcome
is recorded in a second transaction. A crash between the two leaves a
pending ledger entry that is resumed with the same idempotency key.
"""

from dataclasses import dataclass, replace
from datetime import timedelta
from enum import Enum
from typing import Optional
from uuid import UUID
import logging

from django.db import IntegrityError  # type: ignore

from apps.finances.domain.deposit import DepositStatus
from apps.finances.domain.events import PaymentOrphaned
from apps.finances.domain.notifications import (
    ChargeRefunded,
    PaymentCanceled,
    PaymentFailedNotification,
    PaymentSucceeded,
    ProviderNotification,
    UnknownNotification,
)
from apps.finances.domain.payment import Payment, PaymentStatus, RiskAssessment
from apps.finances.gateway import PaymentGateway
from apps.finances.models import LedgerEntry
from apps.finances.repositories import (
    DepositRepository,
    LedgerRepository,
    NotificationLog,
    PaymentRepository,
)
from apps.items.services import AvailabilityService
from apps.rentals.domain.entities import Rental, RentalStatus, SettlementStatus
from apps.rentals.domain.pricing import deposit_for
from apps.rentals.repositories import DjangoRentalRepository
from shared.domain.base import utcnow
from shared.domain.exceptions import (
    DomainError,
    InvalidAmount,
    InvalidTransition,
    NotFound,
    PaymentRetriesExhausted,
    PermissionDenied,
    ProviderError,
    ProviderUnavailable,
    SettlementInProgress,
)
from shared.domain.value_objects import Actor, Money
from shared.infrastructure.datastore import Datastore

logger = logging.getLogger(__name__)


class ReconcileOutcome(Enum):
    APPLIED = 'applied'
    DUPLICATE = 'duplicate'
    IGNORED = 'ignored'
    STALE = 'stale'
    ORPHANED = 'orphaned'


@dataclass(frozen=True)
class PaymentHold:
    """What the client needs to confirm the payment with the provider."""
    payment_id: UUID
    rental_id: UUID
    intent_id: str
    client_secret: str
    amount: Money
    deposit: Money


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    payment_id: Optional[UUID] = None
    rental_id: Optional[UUID] = None
    needs_settlement: bool = False
    needs_refund: bool = False


class PaymentLifecycleManager:
    """
    Owns the Payment aggregate and drives the payment side of the rental
    state machine.

    Lock order is always rental row, then payment row, then item row.
    """

    def __init__(
        self,
        datastore: Datastore,
        gateway: PaymentGateway,
        availability: AvailabilityService,
        rentals: Optional[DjangoRentalRepository] = None,
        payments: Optional[PaymentRepository] = None,
        deposits: Optional[DepositRepository] = None,
        ledger: Optional[LedgerRepository] = None,
        notifications: Optional[NotificationLog] = None,
        max_attempts: int = 3,
        failed_alert_threshold: int = 3,
        failed_window_hours: int = 24,
        notification_retention_days: int = 30,
    ):
        self.datastore = datastore
        self.gateway = gateway
        self.availability = availability
        self.rentals = rentals or DjangoRentalRepository()
        self.payments = payments or PaymentRepository()
        self.deposits = deposits or DepositRepository()
        self.ledger = ledger or LedgerRepository()
        self.notifications = notifications or NotificationLog()
        self.max_attempts = max_attempts
        self.failed_alert_threshold = failed_alert_threshold
        self.failed_window_hours = failed_window_hours
        self.notification_retention_days = notification_retention_days

    # ===== Payment holds =====

    def create_hold(self, rental_id: UUID, actor: Actor) -> PaymentHold:
        """
        Open a payment hold for the rental total plus the item's deposit

        A PENDING attempt that never reached the provider (or whose client
        secret was lost) is resumed with the same idempotency key instead of
        counting a new attempt.
        """

        def _open(uow):
            rental = self.rentals.get(rental_id, lock=True)
            if actor.user_id != rental.renter_id and not actor.is_staff:
                raise PermissionDenied("Only the renter can pay for this rental.")

            current = self.payments.current_for_rental(rental.id, lock=True)
            if current is not None and current.status == PaymentStatus.PENDING:
                return current
            if current is not None and current.was_captured:
                raise InvalidTransition(
                    "This rental is already paid.",
                    rental_id=str(rental.id),
                    payment_id=str(current.id),
                )

            if rental.total.is_zero:
                raise InvalidAmount("Rental amount must be greater than zero.", rental_id=str(rental.id))

            item = self.availability.store.get_item(rental.item_id)
            deposit = deposit_for(item)
            if deposit.currency != rental.total.currency:
                raise InvalidAmount("Deposit currency must match the rental currency.")

            rental.start_payment_attempt(self.max_attempts)
            payment = Payment(
                rental_id=rental.id,
                attempt=self.payments.next_attempt(rental.id),
                amount=rental.total + deposit,
                deposit=deposit,
            )
            self.payments.add(payment)
            uow.collect_events(rental)
            self.rentals.save(rental)
            return payment

        payment = self.datastore.run(_open, name="payment.open_hold")

        metadata = {
            "payment_id": str(payment.id),
            "rental_id": str(payment.rental_id),
            "rental_amount": str(payment.rental_amount.amount),
            "security_deposit_amount": str(payment.deposit.amount),
        }
        try:
            intent = self.gateway.create_intent(
                payment.amount,
                metadata=metadata,
                idempotency_key=f"payment:{payment.id}:intent",
            )
        except ProviderUnavailable:
            logger.warning("Provider unavailable while opening hold for payment %s", payment.id)
            raise
        except ProviderError as exc:
            logger.info("Payment %s rejected by provider: %s", payment.id, exc.message)
            self._record_failure(
                payment.id,
                str(exc.details.get("decline_code") or exc.code),
                exc.message,
            )
            raise

        def _attach(uow):
            locked = self.payments.get(payment.id, lock=True)
            if locked.provider_intent_id != intent.intent_id:
                locked.attach_intent(intent.intent_id)
                self.payments.save(locked)
            return locked

        payment = self.datastore.run(_attach, name="payment.attach_intent")
        logger.info("Payment hold %s opened for rental %s: %s", intent.intent_id, payment.rental_id, payment.amount)

        return PaymentHold(
            payment_id=payment.id,
            rental_id=payment.rental_id,
            intent_id=intent.intent_id,
            client_secret=intent.client_secret,
            amount=payment.amount,
            deposit=payment.deposit,
        )

    def retry_payment(self, rental_id: UUID, actor: Actor) -> PaymentHold:
        """
        PAYMENT_FAILED -> PENDING, then open a new hold

        The period is re-checked because other rentals may have taken it
        while this one was failing. Once the attempt budget is used up the
        rental is cancelled and PaymentRetriesExhausted is raised.

        The failed attempt is voided locally and at the provider first, so
        its intent cannot be completed next to the new one. If it still
        captures, reconcile treats it as superseded and refunds it whole.
        """
        item_id = self.rentals.get(rental_id).item_id

        def _retry(uow):
            rental = self.rentals.get(rental_id, lock=True)
            previous = self.payments.current_for_rental(rental.id, lock=True)
            try:
                rental.retry_payment(actor, self.max_attempts)
            except PaymentRetriesExhausted:
                captured = previous is not None and previous.was_captured
                rental.cancel(Actor.system(), "Payment retries exhausted", payment_captured=captured)
            else:
                self.availability.lock_item(rental.item_id)
                self.availability.assert_available(rental.item_id, rental.period, exclude_rental_id=rental.id)

            stale_intent = None
            if previous is not None and previous.status == PaymentStatus.FAILED:
                stale_intent = previous.provider_intent_id
                previous.mark_cancelled()
                self.payments.save(previous)

            uow.collect_events(rental)
            self.rentals.save(rental)
            return rental, previous, stale_intent

        with self.availability.item_guard(item_id):
            rental, previous, stale_intent = self.datastore.run(_retry, name="payment.retry")

        if stale_intent:
            self._void_intent(previous.id, stale_intent)

        if rental.status == RentalStatus.CANCELLED:
            logger.info("Rental %s abandoned after %d payment attempts", rental.id, rental.payment_attempts)
            raise PaymentRetriesExhausted(
                attempts=rental.payment_attempts,
                max_attempts=self.max_attempts,
            )
        return self.create_hold(rental_id, actor)

    def _void_intent(self, payment_id: UUID, intent_id: str):
        try:
            self.gateway.cancel_intent(intent_id, idempotency_key=f"payment:{payment_id}:cancel")
        except ProviderError as exc:
            # A capture that slips through is refunded by refund_superseded
            logger.warning("Could not void intent %s of payment %s: %s", intent_id, payment_id, exc.message)

    def _record_failure(self, payment_id: UUID, code: str, message: str):
        def _fail(uow):
            payment = self.payments.get(payment_id)
            rental = self.rentals.get(payment.rental_id, lock=True)
            payment = self.payments.get(payment_id, lock=True)
            self._apply_failure(rental, payment, code, message)
            uow.collect_events(payment)
            uow.collect_events(rental)
            self.payments.save(payment)
            self.rentals.save(rental)

        self.datastore.run(_fail, name="payment.record_failure")

    def _apply_failure(self, rental: Rental, payment: Payment, code: str, message: str, failed_at=None) -> bool:
        if not payment.mark_failed(code, message, failed_at=failed_at):
            return False
        current = self.payments.current_for_rental(rental.id)
        if current is None or current.id == payment.id:
            rental.payment_failed()
        return True

    # ===== Provider notifications =====

    def reconcile(self, notification: ProviderNotification) -> ReconcileResult:
        """
        Apply one provider notification

        The notification id is recorded in the same transaction as the
        state change, so a redelivered or concurrently delivered duplicate
        either sees the record or fails on the unique constraint and rolls
        back as a whole.
        """
        if self.notifications.seen(notification.event_id):
            logger.info("Notification %s already processed", notification.event_id)
            return ReconcileResult(ReconcileOutcome.DUPLICATE)

        if isinstance(notification, UnknownNotification):
            logger.info("Ignoring provider notification of type %s", notification.event_type)
            try:
                self.datastore.run(
                    lambda uow: self.notifications.record(
                        notification.event_id,
                        notification.event_type,
                        notification.intent_id,
                        ReconcileOutcome.IGNORED.value,
                    ),
                    name="notification.ignore",
                )
            except IntegrityError as exc:
                return self._duplicate_or_raise(notification, exc)
            return ReconcileResult(ReconcileOutcome.IGNORED)

        located = self._locate(notification)
        if located is None:
            logger.warning(
                "No payment for notification %s (intent %s, payment ref %s)",
                notification.event_id, notification.intent_id, notification.payment_ref,
            )
            raise NotFound(
                "Payment not found",
                intent_id=notification.intent_id,
            )

        item_id = self.rentals.get(located.rental_id).item_id
        try:
            with self.availability.item_guard(item_id):
                result = self.datastore.run(
                    lambda uow: self._apply(uow, notification, located),
                    name="payment.reconcile",
                )
        except IntegrityError as exc:
            return self._duplicate_or_raise(notification, exc)

        logger.info(
            "Notification %s (%s) for payment %s: %s",
            notification.event_id, notification.event_type, located.id, result.outcome.value,
        )
        return result

    def _duplicate_or_raise(self, notification: ProviderNotification, error: IntegrityError) -> ReconcileResult:
        if self.notifications.seen(notification.event_id):
            logger.info("Notification %s processed concurrently", notification.event_id)
            return ReconcileResult(ReconcileOutcome.DUPLICATE)
        raise error

    def _locate(self, notification: ProviderNotification) -> Optional[Payment]:
        payment = self.payments.find_by_intent(notification.intent_id)
        if payment is not None:
            return payment
        # Intent id not stored yet (crash after create_intent): use the id we sent as metadata
        payment = self.payments.find(notification.payment_ref) if notification.payment_ref else None
        if payment is not None and payment.provider_intent_id not in (None, '', notification.intent_id):
            return None
        return payment

    def _apply(self, uow, notification: ProviderNotification, located: Payment) -> ReconcileResult:
        rental = self.rentals.get(located.rental_id, lock=True)
        payment = self.payments.get(located.id, lock=True)
        if notification.intent_id and not payment.provider_intent_id:
            payment.attach_intent(notification.intent_id)

        if isinstance(notification, PaymentSucceeded):
            result = self._on_succeeded(uow, notification, rental, payment)
        elif isinstance(notification, PaymentFailedNotification):
            result = self._on_failed(notification, rental, payment)
        elif isinstance(notification, ChargeRefunded):
            result = self._on_refunded(uow, notification, rental, payment)
        elif isinstance(notification, PaymentCanceled):
            changed = payment.mark_cancelled()
            result = self._result(ReconcileOutcome.APPLIED if changed else ReconcileOutcome.STALE, rental, payment)
        else:
            result = self._result(ReconcileOutcome.IGNORED, rental, payment)

        self.notifications.record(
            notification.event_id,
            notification.event_type,
            notification.intent_id,
            result.outcome.value,
        )
        uow.collect_events(payment)
        uow.collect_events(rental)
        self.payments.save(payment)
        self.rentals.save(rental)
        return result

    @staticmethod
    def _result(outcome: ReconcileOutcome, rental: Rental, payment: Payment) -> ReconcileResult:
        return ReconcileResult(
            outcome=outcome,
            payment_id=payment.id,
            rental_id=rental.id,
            needs_settlement=rental.settlement_status == SettlementStatus.PENDING,
        )

    def _on_succeeded(self, uow, notification: PaymentSucceeded, rental: Rental, payment: Payment) -> ReconcileResult:
        risk = RiskAssessment(score=notification.risk_score, level=notification.risk_level)
        if not payment.mark_completed(risk=risk, paid_at=notification.created):
            return self._result(ReconcileOutcome.STALE, rental, payment)

        self.ledger.record(
            key=f"payment:{payment.id}:charge",
            kind=LedgerEntry.Kind.CHARGE,
            amount=payment.amount,
            rental_id=rental.id,
            payment_id=payment.id,
            provider_reference=payment.provider_intent_id or '',
        )

        current = self.payments.current_for_rental(rental.id)
        if current is not None and current.id != payment.id:
            # The deposit belongs to the current attempt; this capture goes back whole
            result = self._orphan(rental, payment, "superseded by a newer attempt")
            return replace(result, needs_refund=True)

        if not payment.deposit.is_zero:
            self._hold_deposit(uow, rental, payment)

        if rental.status == RentalStatus.PAYMENT_FAILED:
            self.availability.lock_item(rental.item_id)
            report = self.availability.store.calendar(rental.item_id, rental.period).find_conflicts(
                rental.period, exclude_rental_id=rental.id,
            )
            if report.conflict:
                rental.cancel(
                    Actor.system(),
                    "Rental period was taken while the payment was failing",
                    payment_captured=True,
                )
                return self._orphan(rental, payment, "period no longer available")

        if rental.payment_succeeded():
            return self._result(ReconcileOutcome.APPLIED, rental, payment)

        rental.require_settlement()
        return self._orphan(rental, payment, f"rental is {rental.status.value}")

    def _hold_deposit(self, uow, rental: Rental, payment: Payment):
        deposit = self.deposits.get_for_rental(rental.id, payment.currency, lock=True)
        if deposit.status != DepositStatus.NONE:
            return
        deposit.hold(
            payment.deposit,
            payment_completed=True,
            payment_id=payment.id,
            hold_ref=payment.provider_intent_id or '',
        )
        self.ledger.record(
            key=f"deposit:{rental.id}:hold",
            kind=LedgerEntry.Kind.DEPOSIT_HOLD,
            amount=payment.deposit,
            rental_id=rental.id,
            payment_id=payment.id,
        )
        uow.collect_events(deposit)
        self.deposits.save(deposit)

    def _orphan(self, rental: Rental, payment: Payment, why: str) -> ReconcileResult:
        logger.warning("Captured payment %s cannot be applied to rental %s: %s", payment.id, rental.id, why)
        payment.add_event(PaymentOrphaned(
            payment_id=payment.id,
            rental_id=rental.id,
            amount=payment.amount,
            rental_status=rental.status.value,
        ))
        return self._result(ReconcileOutcome.ORPHANED, rental, payment)

    def _on_failed(self, notification: PaymentFailedNotification, rental: Rental, payment: Payment) -> ReconcileResult:
        changed = self._apply_failure(
            rental,
            payment,
            notification.failure_code,
            notification.failure_message,
            failed_at=notification.created,
        )
        return self._result(ReconcileOutcome.APPLIED if changed else ReconcileOutcome.STALE, rental, payment)

    def _on_refunded(self, uow, notification: ChargeRefunded, rental: Rental, payment: Payment) -> ReconcileResult:
        # Partial refunds issued here are already recorded when they were made
        if not notification.fully_refunded:
            return self._result(ReconcileOutcome.IGNORED, rental, payment)

        changed = payment.mark_refunded_externally()
        deposit = self.deposits.get_for_rental(rental.id, payment.currency, lock=True)
        if deposit.status == DepositStatus.HELD and deposit.release():
            uow.collect_events(deposit)
            self.deposits.save(deposit)
            changed = True
        return self._result(ReconcileOutcome.APPLIED if changed else ReconcileOutcome.STALE, rental, payment)

    # ===== Refunds =====

    def refund(
        self,
        payment_id: UUID,
        amount: Money,
        actor: Actor,
        idempotency_key: Optional[str] = None,
    ) -> Payment:
        """
        Refund part of the rental charge

        Refunds in flight are reserved in the ledger, so concurrent refunds
        can never add up to more than the refundable rental amount.
        """
        if not actor.is_staff:
            raise PermissionDenied("Only staff can issue refunds.")

        def _claim(uow):
            payment = self.payments.get(payment_id, lock=True)
            if amount.currency != payment.currency:
                raise InvalidAmount(f"Refund currency must be {payment.currency}")

            key = idempotency_key or (
                f"payment:{payment.id}:refund:{self.ledger.count(payment.id, LedgerEntry.Kind.REFUND) + 1}"
            )
            existing = self.ledger.get(key)
            if existing is not None and existing.status == LedgerEntry.Status.SUCCEEDED:
                return payment, key, True

            reserved = Money(self.ledger.reserved_refunds(payment.id, exclude_key=key), payment.currency)
            payment.ensure_refundable(amount, reserved)
            self.ledger.claim(
                key=key,
                kind=LedgerEntry.Kind.REFUND,
                amount=amount,
                rental_id=payment.rental_id,
                payment_id=payment.id,
            )
            return payment, key, False

        payment, key, already_done = self.datastore.run(_claim, name="payment.claim_refund")
        if already_done:
            logger.info("Refund %s already completed", key)
            return payment

        try:
            result = self.gateway.refund(
                payment.provider_intent_id,
                amount,
                idempotency_key=key,
                metadata={"payment_id": str(payment.id), "rental_id": str(payment.rental_id)},
            )
        except ProviderError as exc:
            logger.warning("Refund %s of %s failed: %s", key, amount, exc.message)
            self.datastore.run(lambda uow: self.ledger.fail(key, exc.message), name="payment.refund_failed")
            raise

        def _record(uow) -> Payment:
            locked = self.payments.get(payment.id, lock=True)
            locked.record_refund(amount, result.refund_id)
            self.ledger.succeed(key, result.refund_id)
            uow.collect_events(locked)
            self.payments.save(locked)
            return locked

        refunded = self.datastore.run(_record, name="payment.record_refund")
        logger.info("Refunded %s of payment %s (%s)", amount, payment.id, result.refund_id)
        return refunded

    def refund_superseded(self, payment_id: UUID) -> bool:
        """
        Return the whole capture of a superseded attempt, deposit included

        The rental is paid for (or will be) by its current attempt, so
        nothing of this capture is kept. Returns True once nothing is owed
        anymore; False leaves it for the next periodic run.
        """
        key = f"payment:{payment_id}:orphan_refund"

        def _claim(uow):
            payment = self.payments.get(payment_id, lock=True)
            if payment.status != PaymentStatus.COMPLETED:
                return payment, None
            current = self.payments.current_for_rental(payment.rental_id)
            if current is None or current.id == payment.id:
                raise InvalidTransition(
                    "Only a superseded payment attempt is refunded in full.",
                    payment_id=str(payment.id),
                )
            if self.ledger.reserved_refunds(payment.id, exclude_key=key):
                raise SettlementInProgress(
                    "Another refund of this payment is in flight.",
                    payment_id=str(payment.id),
                )
            amount = payment.unreturned
            self.ledger.claim(
                key=key,
                kind=LedgerEntry.Kind.REFUND,
                amount=amount,
                rental_id=payment.rental_id,
                payment_id=payment.id,
            )
            return payment, amount

        payment, amount = self.datastore.run(_claim, name="payment.claim_superseded_refund")
        if amount is None:
            return True

        try:
            result = self.gateway.refund(
                payment.provider_intent_id,
                amount,
                idempotency_key=key,
                metadata={
                    "payment_id": str(payment.id),
                    "rental_id": str(payment.rental_id),
                    "reason": "superseded_attempt",
                },
            )
        except ProviderError as exc:
            logger.warning("Full refund of superseded payment %s failed: %s", payment.id, exc.message)
            self.datastore.run(lambda uow: self.ledger.fail(key, exc.message), name="payment.refund_failed")
            return False

        def _record(uow):
            locked = self.payments.get(payment.id, lock=True)
            if locked.status == PaymentStatus.COMPLETED:
                locked.record_full_refund(amount, result.refund_id)
                uow.collect_events(locked)
                self.payments.save(locked)
            self.ledger.succeed(key, result.refund_id)

        self.datastore.run(_record, name="payment.record_superseded_refund")
        logger.info("Refunded superseded payment %s in full: %s (%s)", payment.id, amount, result.refund_id)
        return True

    def refund_superseded_payments(self) -> dict:
        pending = self.payments.superseded_capture_ids()
        refunded = 0
        for payment_id in pending:
            try:
                if self.refund_superseded(payment_id):
                    refunded += 1
            except DomainError as exc:
                logger.warning("Superseded payment %s not refunded yet: %s", payment_id, exc.message)
        if pending:
            logger.info("Refunded %d of %d superseded payments", refunded, len(pending))
        return {"pending": len(pending), "refunded": refunded}

    # ===== Housekeeping =====

    def monitor_failed_payments(self, now=None) -> dict:
        now = now or utcnow()
        since = now - timedelta(hours=self.failed_window_hours)
        failed = self.payments.failed_count_since(since)
        alert = failed >= self.failed_alert_threshold
        if alert:
            logger.error(
                "%d failed payments in the last %d hours (threshold %d)",
                failed, self.failed_window_hours, self.failed_alert_threshold,
            )
        return {
            "failed": failed,
            "window_hours": self.failed_window_hours,
            "threshold": self.failed_alert_threshold,
            "alert": alert,
        }

    def purge_processed_notifications(self, now=None) -> dict:
        now = now or utcnow()
        cutoff = now - timedelta(days=self.notification_retention_days)
        deleted = self.datastore.run(
            lambda uow: self.notifications.purge_before(cutoff),
            name="notification.purge",
        )
        logger.info("Purged %d processed notifications older than %s", deleted, cutoff)
        return {"deleted": deleted, "cutoff": cutoff.isoformat()}
