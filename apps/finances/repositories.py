"""Persistence for payments, deposits, the money ledger and webhook bookkeeping."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID

from django.db import transaction  # type: ignore
from django.db.models import Exists, OuterRef, Sum  # type: ignore

from apps.finances.domain.deposit import DepositAction, DepositStatus, SecurityDeposit
from apps.finances.domain.payment import Payment, PaymentStatus, RiskAssessment
from apps.finances.models import (
    LedgerEntry,
    Payment as PaymentModel,
    PayoutAccount,
    ProcessedNotification,
    SecurityDeposit as DepositModel,
)
from shared.domain.exceptions import NotFound
from shared.domain.value_objects import Money


def _lock_if_possible(queryset):
    if not transaction.get_connection().in_atomic_block:
        return queryset
    return queryset.select_for_update()


class PaymentRepository:

    def get(self, payment_id: UUID, lock: bool = False) -> Payment:
        payment = self._first(PaymentModel.objects.filter(pk=payment_id), lock)
        if payment is None:
            raise NotFound(f"Payment {payment_id} not found", payment_id=str(payment_id))
        return payment

    def find(self, payment_id, lock: bool = False) -> Optional[Payment]:
        """Lookup by a possibly malformed id (e.g. echoed in provider metadata)."""
        try:
            payment_uuid = UUID(str(payment_id))
        except ValueError:
            return None
        return self._first(PaymentModel.objects.filter(pk=payment_uuid), lock)

    def find_by_intent(self, intent_id: str, lock: bool = False) -> Optional[Payment]:
        if not intent_id:
            return None
        return self._first(PaymentModel.objects.filter(provider_intent_id=intent_id), lock)

    def current_for_rental(self, rental_id: UUID, lock: bool = False) -> Optional[Payment]:
        """Newest attempt of the rental."""
        return self._first(PaymentModel.objects.filter(rental_id=rental_id).order_by("-attempt"), lock)

    def captured_for_rental(self, rental_id: UUID, lock: bool = False) -> Optional[Payment]:
        """
        The current attempt, if its money was captured

        Older attempts never count: a capture on a superseded attempt is
        refunded in full and does not pay for the rental.
        """
        current = self.current_for_rental(rental_id, lock)
        return current if current is not None and current.was_captured else None

    def superseded_capture_ids(self) -> List[UUID]:
        """Completed attempts of rentals that already moved on to a newer attempt."""
        newer = PaymentModel.objects.filter(rental_id=OuterRef("rental_id"), attempt__gt=OuterRef("attempt"))
        queryset = PaymentModel.objects.filter(status=PaymentModel.Status.COMPLETED).filter(Exists(newer))
        return list(queryset.order_by("created_at").values_list("pk", flat=True))

    def next_attempt(self, rental_id: UUID) -> int:
        latest = PaymentModel.objects.filter(rental_id=rental_id).order_by("-attempt").first()
        return (latest.attempt if latest else 0) + 1

    def failed_count_since(self, since: datetime) -> int:
        """Declines since ``since``, including attempts voided afterwards by a retry."""
        return PaymentModel.objects.filter(failed_at__gte=since).count()

    def add(self, payment: Payment) -> None:
        PaymentModel.objects.create(id=payment.id, **self._to_fields(payment))

    def save(self, payment: Payment) -> None:
        PaymentModel.objects.filter(pk=payment.id).update(**self._to_fields(payment))

    def _first(self, queryset, lock: bool) -> Optional[Payment]:
        if lock:
            queryset = _lock_if_possible(queryset)
        row = queryset.first()
        return self._to_domain(row) if row is not None else None

    @staticmethod
    def _to_fields(payment: Payment) -> dict:
        return {
            "rental_id": payment.rental_id,
            "attempt": payment.attempt,
            "provider_intent_id": payment.provider_intent_id,
            "amount": payment.amount.amount,
            "deposit_amount": payment.deposit.amount,
            "currency": payment.currency,
            "status": payment.status.value,
            "refunded_amount": payment.refunded.amount,
            "failure_code": payment.failure_code,
            "failure_message": payment.failure_message[:500],
            "risk_score": payment.risk.score,
            "risk_level": payment.risk.level,
            "paid_at": payment.paid_at,
            "failed_at": payment.failed_at,
            "refunded_at": payment.refunded_at,
            "created_at": payment.created_at,
            "updated_at": payment.updated_at,
        }

    @staticmethod
    def _to_domain(row: PaymentModel) -> Payment:
        return Payment(
            id=row.pk,
            rental_id=row.rental_id,
            attempt=row.attempt,
            amount=Money(row.amount, row.currency),
            deposit=Money(row.deposit_amount, row.currency),
            status=PaymentStatus(row.status),
            provider_intent_id=row.provider_intent_id,
            refunded=Money(row.refunded_amount, row.currency),
            failure_code=row.failure_code,
            failure_message=row.failure_message,
            risk=RiskAssessment(score=row.risk_score, level=row.risk_level),
            paid_at=row.paid_at,
            failed_at=row.failed_at,
            refunded_at=row.refunded_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class DepositRepository:

    def get_for_rental(self, rental_id: UUID, currency: str = "USD", lock: bool = False) -> SecurityDeposit:
        """Deposit of the rental; a fresh NONE deposit when none was recorded yet."""
        queryset = DepositModel.objects.filter(rental_id=rental_id)
        if lock:
            queryset = _lock_if_possible(queryset)
        row = queryset.first()
        if row is None:
            return SecurityDeposit(rental_id=rental_id, currency=currency)
        return self._to_domain(row)

    def save(self, deposit: SecurityDeposit) -> None:
        DepositModel.objects.update_or_create(
            rental_id=deposit.rental_id,
            defaults={
                "id": deposit.id,
                "payment_id": deposit.payment_id,
                "status": deposit.status.value,
                "currency": deposit.currency,
                "held_amount": deposit.held.amount,
                "charged_amount": deposit.charged.amount,
                "provider_hold_ref": deposit.provider_hold_ref,
                "pending_action": deposit.pending_action.value if deposit.pending_action else "",
                "pending_amount": deposit.pending_amount.amount if deposit.pending_amount else None,
                "held_at": deposit.held_at,
                "settled_at": deposit.settled_at,
                "created_at": deposit.created_at,
                "updated_at": deposit.updated_at,
            },
        )

    @staticmethod
    def _to_domain(row: DepositModel) -> SecurityDeposit:
        return SecurityDeposit(
            id=row.pk,
            rental_id=row.rental_id,
            currency=row.currency,
            status=DepositStatus(row.status),
            held=Money(row.held_amount, row.currency),
            charged=Money(row.charged_amount, row.currency),
            payment_id=row.payment_id,
            provider_hold_ref=row.provider_hold_ref,
            pending_action=DepositAction(row.pending_action) if row.pending_action else None,
            pending_amount=Money(row.pending_amount, row.currency) if row.pending_amount is not None else None,
            held_at=row.held_at,
            settled_at=row.settled_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class LedgerRepository:
    """
    Claim-then-call bookkeeping for provider money movements

    ``claim`` creates (or finds) the entry for an idempotency key in
    ``pending``; after the provider answered, ``succeed`` or ``fail``
    records the outcome. A key that already succeeded is never sent to
    the provider again.
    """

    def claim(
        self,
        *,
        key: str,
        kind: str,
        amount: Money,
        rental_id: UUID,
        payment_id: Optional[UUID] = None,
    ) -> Tuple[LedgerEntry, bool]:
        entry, created = LedgerEntry.objects.get_or_create(
            idempotency_key=key,
            defaults={
                "kind": kind,
                "amount": amount.amount,
                "currency": amount.currency,
                "rental_id": rental_id,
                "payment_id": payment_id,
            },
        )
        if not created and entry.status == LedgerEntry.Status.FAILED:
            entry.status = LedgerEntry.Status.PENDING
            entry.error = ""
            entry.save(update_fields=["status", "error", "updated_at"])
        return entry, created

    def get(self, key: str) -> Optional[LedgerEntry]:
        return LedgerEntry.objects.filter(idempotency_key=key).first()

    def record(
        self,
        *,
        key: str,
        kind: str,
        amount: Money,
        rental_id: UUID,
        payment_id: Optional[UUID] = None,
        provider_reference: str = "",
    ) -> LedgerEntry:
        """Write an entry that needs no provider call (e.g. the captured charge)."""
        entry, _ = LedgerEntry.objects.get_or_create(
            idempotency_key=key,
            defaults={
                "kind": kind,
                "status": LedgerEntry.Status.SUCCEEDED,
                "amount": amount.amount,
                "currency": amount.currency,
                "rental_id": rental_id,
                "payment_id": payment_id,
                "provider_reference": provider_reference,
            },
        )
        return entry

    def succeed(self, key: str, provider_reference: str = "") -> None:
        LedgerEntry.objects.filter(idempotency_key=key).update(
            status=LedgerEntry.Status.SUCCEEDED,
            provider_reference=provider_reference,
            error="",
        )

    def fail(self, key: str, error: str) -> None:
        LedgerEntry.objects.filter(idempotency_key=key).update(
            status=LedgerEntry.Status.FAILED,
            error=error[:500],
        )

    def reserved_refunds(self, payment_id: UUID, exclude_key: str = "") -> Decimal:
        """Refunds claimed for the payment that have not been confirmed yet."""
        queryset = LedgerEntry.objects.filter(
            payment_id=payment_id,
            kind=LedgerEntry.Kind.REFUND,
            status=LedgerEntry.Status.PENDING,
        )
        if exclude_key:
            queryset = queryset.exclude(idempotency_key=exclude_key)
        return queryset.aggregate(total=Sum("amount"))["total"] or Decimal("0.00")

    def count(self, payment_id: UUID, kind: str) -> int:
        return LedgerEntry.objects.filter(payment_id=payment_id, kind=kind).count()


class NotificationLog:
    """At-most-once bookkeeping of provider notifications."""

    def record(self, event_id: str, event_type: str, intent_id: str, outcome: str) -> None:
        """
        Insert the notification id

        Raises IntegrityError for an id that is already recorded; callers
        insert it in the same transaction as the state change so a
        concurrent duplicate rolls back as a whole.
        """
        ProcessedNotification.objects.create(
            event_id=event_id,
            event_type=event_type,
            provider_intent_id=intent_id or "",
            outcome=outcome,
        )

    def seen(self, event_id: str) -> bool:
        return ProcessedNotification.objects.filter(event_id=event_id).exists()

    def purge_before(self, cutoff: datetime) -> int:
        deleted, _ = ProcessedNotification.objects.filter(processed_at__lt=cutoff).delete()
        return deleted


class PayoutAccountRepository:

    def destination_for(self, owner_id: int) -> Optional[str]:
        account = PayoutAccount.objects.filter(owner_id=owner_id, payouts_enabled=True).first()
        return account.provider_account_id if account else None
