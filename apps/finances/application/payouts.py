"""Owner payouts of completed rentals."""

from dataclasses import dataclass
from typing import Optional
from uuid import UUID
import logging

from apps.finances.gateway import PaymentGateway
from apps.finances.models import LedgerEntry
from apps.finances.repositories import LedgerRepository, PaymentRepository, PayoutAccountRepository
from apps.rentals.domain.entities import RentalStatus
from apps.rentals.repositories import DjangoRentalRepository
from shared.domain.exceptions import InvalidTransition, PermissionDenied, ProviderError, ValidationFailed
from shared.domain.value_objects import Actor, Money
from shared.infrastructure.datastore import Datastore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PayoutResult:
    rental_id: UUID
    amount: Money
    destination: str
    transfer_id: str
    already_paid: bool = False


class OwnerPayouts:
    """Transfers the owner's share of a completed rental, at most once."""

    def __init__(
        self,
        datastore: Datastore,
        gateway: PaymentGateway,
        rentals: Optional[DjangoRentalRepository] = None,
        payments: Optional[PaymentRepository] = None,
        ledger: Optional[LedgerRepository] = None,
        accounts: Optional[PayoutAccountRepository] = None,
    ):
        self.datastore = datastore
        self.gateway = gateway
        self.rentals = rentals or DjangoRentalRepository()
        self.payments = payments or PaymentRepository()
        self.ledger = ledger or LedgerRepository()
        self.accounts = accounts or PayoutAccountRepository()

    def pay_owner(self, rental_id: UUID, actor: Actor) -> PayoutResult:
        if not actor.is_staff:
            raise PermissionDenied("Only staff can pay out owners.")

        key = f"rental:{rental_id}:owner_payout"

        def _claim(uow):
            rental = self.rentals.get(rental_id, lock=True)
            if rental.status != RentalStatus.COMPLETED or rental.split is None:
                raise InvalidTransition(
                    "Only completed rentals can be paid out.",
                    rental_id=str(rental.id),
                    status=rental.status.value,
                )
            if rental.split.owner_payout.is_zero:
                raise ValidationFailed("Nothing to pay out for this rental.")
            destination = self.accounts.destination_for(rental.owner_id)
            if not destination:
                raise ValidationFailed(
                    "Owner has no payout account.",
                    owner_id=rental.owner_id,
                )
            payment = self.payments.captured_for_rental(rental.id)
            entry, _ = self.ledger.claim(
                key=key,
                kind=LedgerEntry.Kind.PAYOUT,
                amount=rental.split.owner_payout,
                rental_id=rental.id,
                payment_id=payment.id if payment else None,
            )
            return rental, destination, entry

        rental, destination, entry = self.datastore.run(_claim, name="payout.claim")
        amount = rental.split.owner_payout

        if entry.status == LedgerEntry.Status.SUCCEEDED:
            return PayoutResult(rental.id, amount, destination, entry.provider_reference, already_paid=True)

        try:
            transfer = self.gateway.create_transfer(
                amount,
                destination,
                metadata={"rental_id": str(rental.id), "owner_id": str(rental.owner_id)},
                idempotency_key=key,
            )
        except ProviderError as exc:
            logger.warning("Payout for rental %s failed: %s", rental.id, exc.message)
            self.datastore.run(lambda uow: self.ledger.fail(key, exc.message), name="payout.failed")
            raise

        self.datastore.run(lambda uow: self.ledger.succeed(key, transfer.transfer_id), name="payout.record")
        logger.info("Paid %s to owner %s for rental %s (%s)", amount, rental.owner_id, rental.id, transfer.transfer_id)
        return PayoutResult(rental.id, amount, destination, transfer.transfer_id)
