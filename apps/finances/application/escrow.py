"""
Security Deposit Escrow

hold, charge and release of a rental's deposit. Charge and release
return money through a provider refund on the original payment, so they
follow claim -> provider call -> record:

1. Claim the deposit and the ledger entry in one transaction
2. Call the provider with a deterministic idempotency key, no lock held
3. Record the terminal state, or drop the claim when the provider failed

A repeated release is a no-op; a repeated charge resumes its own claim.
"""

from typing import Optional
from uuid import UUID
import logging

from apps.finances.domain.deposit import DepositAction, DepositStatus, SecurityDeposit
from apps.finances.gateway import PaymentGateway
from apps.finances.models import LedgerEntry
from apps.finances.repositories import DepositRepository, LedgerRepository, PaymentRepository
from apps.rentals.repositories import DjangoRentalRepository
from shared.domain.exceptions import InvalidAmount, NotHeld, PermissionDenied, ProviderError
from shared.domain.value_objects import Actor, Money
from shared.infrastructure.datastore import Datastore

logger = logging.getLogger(__name__)


class SecurityDepositEscrow:

    def __init__(
        self,
        datastore: Datastore,
        gateway: PaymentGateway,
        deposits: Optional[DepositRepository] = None,
        payments: Optional[PaymentRepository] = None,
        ledger: Optional[LedgerRepository] = None,
        rentals: Optional[DjangoRentalRepository] = None,
    ):
        self.datastore = datastore
        self.gateway = gateway
        self.deposits = deposits or DepositRepository()
        self.payments = payments or PaymentRepository()
        self.ledger = ledger or LedgerRepository()
        self.rentals = rentals or DjangoRentalRepository()

    def get(self, rental_id: UUID) -> SecurityDeposit:
        return self.deposits.get_for_rental(rental_id)

    def hold(self, rental_id: UUID, amount: Money) -> SecurityDeposit:
        """NONE -> HELD; the rental's payment must be completed."""

        def _hold(uow) -> SecurityDeposit:
            payment = self.payments.captured_for_rental(rental_id)
            deposit = self.deposits.get_for_rental(rental_id, amount.currency, lock=True)
            deposit.hold(
                amount,
                payment_completed=payment is not None and payment.is_completed,
                payment_id=payment.id if payment else None,
                hold_ref=(payment.provider_intent_id or '') if payment else '',
            )
            self.ledger.record(
                key=f"deposit:{rental_id}:hold",
                kind=LedgerEntry.Kind.DEPOSIT_HOLD,
                amount=amount,
                rental_id=rental_id,
                payment_id=deposit.payment_id,
            )
            uow.collect_events(deposit)
            self.deposits.save(deposit)
            return deposit

        deposit = self.datastore.run(_hold, name="deposit.hold")
        logger.info("Deposit of %s held for rental %s", amount, rental_id)
        return deposit

    def charge(self, rental_id: UUID, amount: Money, actor: Actor) -> SecurityDeposit:
        """
        HELD -> CHARGED

        Keeps ``amount`` for damages and returns the remainder of the held
        deposit to the renter.
        """
        self._ensure_staff(actor)
        key = f"deposit:{rental_id}:charge"

        def _claim(uow):
            deposit = self.deposits.get_for_rental(rental_id, amount.currency, lock=True)
            if amount.currency != deposit.currency:
                raise InvalidAmount(f"Charge currency must be {deposit.currency}")
            deposit.claim(DepositAction.CHARGE, amount)
            self.deposits.save(deposit)

            remainder = deposit.held - amount
            entry = None
            if not remainder.is_zero:
                entry, _ = self.ledger.claim(
                    key=key,
                    kind=LedgerEntry.Kind.DEPOSIT_RELEASE,
                    amount=remainder,
                    rental_id=rental_id,
                    payment_id=deposit.payment_id,
                )
            return deposit, remainder, entry

        deposit, remainder, entry = self.datastore.run(_claim, name="deposit.claim_charge")

        refund_id = ''
        if entry is not None and entry.status != LedgerEntry.Status.SUCCEEDED:
            refund_id = self._return_to_renter(deposit, remainder, key)

        def _finish(uow) -> SecurityDeposit:
            locked = self.deposits.get_for_rental(rental_id, deposit.currency, lock=True)
            locked.charge(amount)
            if entry is not None:
                self.ledger.succeed(key, refund_id or entry.provider_reference)
            self.ledger.record(
                key=f"deposit:{rental_id}:kept",
                kind=LedgerEntry.Kind.DEPOSIT_CHARGE,
                amount=amount,
                rental_id=rental_id,
                payment_id=locked.payment_id,
            )
            uow.collect_events(locked)
            self.deposits.save(locked)
            return locked

        charged = self.datastore.run(_finish, name="deposit.charge")
        logger.info("Deposit of rental %s charged %s, returned %s", rental_id, amount, remainder)
        return charged

    def release(self, rental_id: UUID, actor: Actor) -> SecurityDeposit:
        """HELD -> RELEASED; releasing an already released deposit changes nothing."""
        if not actor.is_staff and actor.user_id != self.rentals.get(rental_id).owner_id:
            raise PermissionDenied("Only staff or the item owner can release the deposit.")
        key = f"deposit:{rental_id}:release"

        def _claim(uow):
            deposit = self.deposits.get_for_rental(rental_id, lock=True)
            if deposit.status == DepositStatus.RELEASED:
                return deposit, None
            deposit.claim(DepositAction.RELEASE)
            self.deposits.save(deposit)
            entry, _ = self.ledger.claim(
                key=key,
                kind=LedgerEntry.Kind.DEPOSIT_RELEASE,
                amount=deposit.held,
                rental_id=rental_id,
                payment_id=deposit.payment_id,
            )
            return deposit, entry

        deposit, entry = self.datastore.run(_claim, name="deposit.claim_release")
        if entry is None:
            logger.info("Deposit of rental %s already released", rental_id)
            return deposit

        refund_id = entry.provider_reference
        if entry.status != LedgerEntry.Status.SUCCEEDED:
            refund_id = self._return_to_renter(deposit, deposit.held, key)

        def _finish(uow) -> SecurityDeposit:
            locked = self.deposits.get_for_rental(rental_id, lock=True)
            if locked.status == DepositStatus.HELD:
                locked.release()
            self.ledger.succeed(key, refund_id)
            uow.collect_events(locked)
            self.deposits.save(locked)
            return locked

        released = self.datastore.run(_finish, name="deposit.release")
        logger.info("Deposit of %s released for rental %s", deposit.held, rental_id)
        return released

    def _return_to_renter(self, deposit: SecurityDeposit, amount: Money, key: str) -> str:
        if not deposit.provider_hold_ref:
            raise NotHeld("Deposit has no provider payment to refund from.", rental_id=str(deposit.rental_id))
        try:
            result = self.gateway.refund(
                deposit.provider_hold_ref,
                amount,
                idempotency_key=key,
                metadata={"rental_id": str(deposit.rental_id), "reason": "security_deposit"},
            )
        except ProviderError as exc:
            logger.warning("Returning deposit of rental %s failed: %s", deposit.rental_id, exc.message)

            def _abandon(uow):
                locked = self.deposits.get_for_rental(deposit.rental_id, lock=True)
                locked.abandon_claim()
                self.deposits.save(locked)
                self.ledger.fail(key, exc.message)

            self.datastore.run(_abandon, name="deposit.abandon_claim")
            raise
        return result.refund_id

    @staticmethod
    def _ensure_staff(actor: Actor):
        if not actor.is_staff:
            raise PermissionDenied("Only staff can settle security deposits.")
