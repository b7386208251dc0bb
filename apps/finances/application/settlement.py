"""Compensation for rentals that ended after their payment was captured."""

from typing import Optional
from uuid import UUID
import logging

from apps.finances.application.escrow import SecurityDepositEscrow
from apps.finances.application.lifecycle import PaymentLifecycleManager
from apps.finances.domain.deposit import DepositStatus
from apps.finances.domain.payment import PaymentStatus
from apps.finances.repositories import DepositRepository, PaymentRepository
from apps.rentals.domain.entities import SettlementStatus
from apps.rentals.repositories import DjangoRentalRepository
from shared.domain.exceptions import DomainError
from shared.domain.value_objects import Actor
from shared.infrastructure.datastore import Datastore

logger = logging.getLogger(__name__)


class CancellationSettlement:
    """
    Refunds the rental charge and releases the held deposit of a cancelled
    (or rejected) rental whose money was captured.

    Both steps use deterministic idempotency keys, so running the
    settlement again after a partial failure never moves money twice.
    """

    def __init__(
        self,
        datastore: Datastore,
        payments_manager: PaymentLifecycleManager,
        escrow: SecurityDepositEscrow,
        rentals: Optional[DjangoRentalRepository] = None,
        payments: Optional[PaymentRepository] = None,
        deposits: Optional[DepositRepository] = None,
    ):
        self.datastore = datastore
        self.payments_manager = payments_manager
        self.escrow = escrow
        self.rentals = rentals or DjangoRentalRepository()
        self.payments = payments or PaymentRepository()
        self.deposits = deposits or DepositRepository()

    def settle(self, rental_id: UUID) -> bool:
        """Returns True once nothing is owed anymore; False leaves it for the next run."""
        rental = self.rentals.get(rental_id)
        if rental.settlement_status != SettlementStatus.PENDING:
            return True

        system = Actor.system()
        try:
            payment = self.payments.captured_for_rental(rental.id)
            if payment is not None and payment.status == PaymentStatus.COMPLETED and not payment.refundable.is_zero:
                self.payments_manager.refund(
                    payment.id,
                    payment.refundable,
                    system,
                    idempotency_key=f"rental:{rental.id}:cancel_refund",
                )
            deposit = self.deposits.get_for_rental(rental.id, rental.total.currency)
            if deposit.status == DepositStatus.HELD:
                self.escrow.release(rental.id, system)
        except DomainError as exc:
            logger.warning("Settlement of rental %s incomplete, will retry: %s", rental.id, exc.message)
            return False

        def _settled(uow):
            locked = self.rentals.get(rental_id, lock=True)
            locked.mark_settled()
            self.rentals.save(locked)

        self.datastore.run(_settled, name="rental.settle")
        logger.info("Rental %s settled", rental_id)
        return True

    def pending(self):
        return self.rentals.pending_settlement_ids()
