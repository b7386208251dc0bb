"""
Rental Command Handlers

These are the use cases for the rental domain.
They orchestrate domain operations within transactions.

Commands:
- CreateRentalCommand: Renter requests an item for a period
- DecideRentalCommand: Owner approves or rejects a pending request
- CancelRentalCommand: A party cancels; captured money is compensated
- CompleteRentalCommand: Owner/staff finish an approved, paid rental
- ExpireRentalCommand: Background expiry of a stale hold
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Optional
from uuid import UUID, uuid4
import logging

from apps.finances.domain.deposit import DepositStatus
from apps.finances.domain.fees import FeeSplit, compute_split, rate_for_category
from apps.finances.domain.payment import PaymentStatus
from apps.finances.gateway import PaymentGateway
from apps.finances.repositories import DepositRepository, PaymentRepository
from apps.items.services import AvailabilityService
from apps.rentals.domain.entities import Decision, Rental, SettlementStatus
from apps.rentals.domain.pricing import RentalType, quote
from apps.rentals.repositories import DjangoRentalRepository
from shared.domain.base import utcnow
from shared.domain.exceptions import (
    InvalidInterval,
    ItemUnavailable,
    ProviderError,
    ValidationFailed,
)
from shared.domain.value_objects import Actor, Interval
from shared.infrastructure.datastore import Datastore

logger = logging.getLogger(__name__)


# ===== Commands =====

@dataclass
class CreateRentalCommand:
    """
    Command to request an item for a period

    This is the primary entry point for creating rentals.
    """
    item_id: int
    renter: Actor
    start: datetime
    end: datetime
    rental_type: str


@dataclass
class DecideRentalCommand:
    rental_id: UUID
    actor: Actor
    decision: str
    reason: str = ''


@dataclass
class CancelRentalCommand:
    rental_id: UUID
    actor: Actor
    reason: str = ''


@dataclass
class CompleteRentalCommand:
    rental_id: UUID
    actor: Actor


@dataclass
class ExpireRentalCommand:
    rental_id: UUID


@dataclass
class CompletionResult:
    rental: Rental
    split: FeeSplit
    deposit_status: DepositStatus

    @property
    def deposit_release_eligible(self) -> bool:
        """Deposit can now be released or charged by an administrator."""
        return self.deposit_status == DepositStatus.HELD


def _void_intent_quietly(gateway: PaymentGateway, payment_id: UUID, intent_id: Optional[str]):
    """Cancel an open provider hold; failures are left to the provider's own expiry."""
    if not intent_id:
        return
    try:
        gateway.cancel_intent(intent_id, idempotency_key=f"payment:{payment_id}:cancel")
    except ProviderError as exc:
        logger.warning("Could not void payment intent %s for payment %s: %s", intent_id, payment_id, exc)


# ===== Command Handlers =====

class CreateRentalHandler:
    """
    Handler for CreateRental command

    Double booking prevention:
    1. Acquire the item's keyed lock (serializes writers in this process)
    2. Start database transaction with retries (Datastore.run)
    3. Lock the item row with SELECT FOR UPDATE (serializes across processes)
    4. Check conflicts against active rentals and availability windows
    5. Insert the PENDING rental
    6. Commit, then publish RentalRequested
    """

    def __init__(self, datastore: Datastore, availability: AvailabilityService, rentals: DjangoRentalRepository):
        self.datastore = datastore
        self.availability = availability
        self.rentals = rentals

    def handle(self, command: CreateRentalCommand) -> Rental:
        try:
            period = Interval(command.start, command.end)
        except ValueError as exc:
            raise InvalidInterval(str(exc)) from exc
        if period.start < utcnow():
            raise InvalidInterval("Rental cannot start in the past.")
        rental_type = RentalType.parse(command.rental_type)

        logger.info(
            "Creating rental for item %s, renter %s, period %s (%s)",
            command.item_id, command.renter.user_id, period, rental_type.value,
        )

        def _create(uow) -> Rental:
            item = self.availability.lock_item(command.item_id)
            if not item.is_available:
                raise ItemUnavailable(item_id=item.id)

            price = quote(item, rental_type, period)
            rental = Rental.request(
                rental_id=uuid4(),
                item_id=item.id,
                renter_id=command.renter.user_id,
                owner_id=item.owner_id,
                rental_type=rental_type,
                period=period,
                total=price.total,
            )
            self.availability.assert_available(item.id, period)

            uow.collect_events(rental)
            self.rentals.add(rental)
            return rental

        with self.availability.item_guard(command.item_id):
            rental = self.datastore.run(_create, name="rental.create")

        logger.info("Rental %s created: %s", rental.id, rental.total)
        return rental


class DecideRentalHandler:

    def __init__(self, datastore: Datastore, rentals: DjangoRentalRepository):
        self.datastore = datastore
        self.rentals = rentals

    def handle(self, command: DecideRentalCommand) -> Rental:
        try:
            decision = Decision(str(command.decision).lower())
        except ValueError:
            raise ValidationFailed(
                f"Unknown decision {command.decision!r}; expected approve or reject",
            ) from None

        def _decide(uow) -> Rental:
            rental = self.rentals.get(command.rental_id, lock=True)
            rental.decide(command.actor, decision, command.reason)
            uow.collect_events(rental)
            self.rentals.save(rental)
            return rental

        rental = self.datastore.run(_decide, name="rental.decide")
        logger.info("Rental %s %s by owner %s", rental.id, rental.status.value, command.actor.user_id)
        return rental


class CancelRentalHandler:
    """
    Handler for CancelRental command

    The state change is committed first; provider calls (voiding an open
    hold, refunding a captured charge) run afterwards without any lock.
    When compensation fails the rental keeps ``settlement_status=pending``
    and the settlement job retries it.
    """

    def __init__(
        self,
        datastore: Datastore,
        rentals: DjangoRentalRepository,
        payments: PaymentRepository,
        gateway: PaymentGateway,
        settle: Callable[[UUID], bool],
    ):
        self.datastore = datastore
        self.rentals = rentals
        self.payments = payments
        self.gateway = gateway
        self.settle = settle

    def handle(self, command: CancelRentalCommand) -> Rental:
        def _cancel(uow):
            rental = self.rentals.get(command.rental_id, lock=True)
            current = self.payments.current_for_rental(rental.id, lock=True)
            captured = self.payments.captured_for_rental(rental.id) is not None

            rental.cancel(command.actor, command.reason, payment_captured=captured)

            open_intent = None
            if current is not None and current.status in (PaymentStatus.PENDING, PaymentStatus.FAILED):
                open_intent = current.provider_intent_id
            if current is not None and current.mark_cancelled():
                self.payments.save(current)

            uow.collect_events(rental)
            self.rentals.save(rental)
            return rental, current, open_intent

        rental, current, open_intent = self.datastore.run(_cancel, name="rental.cancel")
        logger.info(
            "Rental %s cancelled by %s (settlement %s)",
            rental.id, command.actor.user_id, rental.settlement_status.value,
        )

        if current is not None:
            _void_intent_quietly(self.gateway, current.id, open_intent)

        if rental.settlement_status == SettlementStatus.PENDING and self.settle(rental.id):
            rental.mark_settled()
        return rental


class CompleteRentalHandler:
    """
    Handler for CompleteRental command

    Applies the platform fee split; the deposit stays held until an
    administrator releases or charges it.
    """

    def __init__(
        self,
        datastore: Datastore,
        availability: AvailabilityService,
        rentals: DjangoRentalRepository,
        payments: PaymentRepository,
        deposits: DepositRepository,
        fee_rate,
        fee_rates: Optional[Mapping] = None,
    ):
        self.datastore = datastore
        self.availability = availability
        self.rentals = rentals
        self.payments = payments
        self.deposits = deposits
        self.fee_rate = fee_rate
        self.fee_rates = fee_rates or {}

    def handle(self, command: CompleteRentalCommand) -> CompletionResult:
        def _complete(uow) -> CompletionResult:
            rental = self.rentals.get(command.rental_id, lock=True)
            payment = self.payments.current_for_rental(rental.id)
            item = self.availability.store.get_item(rental.item_id)

            rate = rate_for_category(item.category, self.fee_rate, self.fee_rates)
            split = compute_split(
                rental.total,
                rate,
                deposit=payment.deposit if payment is not None else None,
            )
            rental.complete(
                command.actor,
                payment_completed=payment is not None and payment.is_completed,
                split=split,
            )
            deposit = self.deposits.get_for_rental(rental.id, rental.total.currency)

            uow.collect_events(rental)
            self.rentals.save(rental)
            return CompletionResult(rental=rental, split=split, deposit_status=deposit.status)

        result = self.datastore.run(_complete, name="rental.complete")
        logger.info(
            "Rental %s completed: platform fee %s, owner payout %s",
            result.rental.id, result.split.platform_fee, result.split.owner_payout,
        )
        return result


class ExpireRentalHandler:
    """Cancels a stale hold through the same state-machine guard as a manual cancel."""

    def __init__(
        self,
        datastore: Datastore,
        rentals: DjangoRentalRepository,
        payments: PaymentRepository,
        gateway: PaymentGateway,
    ):
        self.datastore = datastore
        self.rentals = rentals
        self.payments = payments
        self.gateway = gateway

    def handle(self, command: ExpireRentalCommand) -> bool:
        def _expire(uow):
            rental = self.rentals.get(command.rental_id, lock=True)
            current = self.payments.current_for_rental(rental.id, lock=True)
            captured = self.payments.captured_for_rental(rental.id) is not None

            if not rental.expire(payment_captured=captured):
                return False, None, None

            open_intent = None
            if current is not None and current.status in (PaymentStatus.PENDING, PaymentStatus.FAILED):
                open_intent = current.provider_intent_id
            if current is not None and current.mark_cancelled():
                self.payments.save(current)

            uow.collect_events(rental)
            self.rentals.save(rental)
            return True, current, open_intent

        expired, current, open_intent = self.datastore.run(_expire, name="rental.expire")
        if expired:
            logger.info("Rental %s expired", command.rental_id)
            if current is not None:
                _void_intent_quietly(self.gateway, current.id, open_intent)
        return expired
