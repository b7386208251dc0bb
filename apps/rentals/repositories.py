"""Mapping between ``rentals.Rental`` rows and the Rental aggregate."""

from __future__ import annotations

from datetime import datetime
from typing import List
from uuid import UUID

from django.db import transaction  # type: ignore

from apps.finances.domain.fees import FeeSplit
from apps.rentals.domain.entities import Rental, RentalStatus, SettlementStatus
from apps.rentals.domain.pricing import RentalType
from apps.rentals.models import Rental as RentalModel
from shared.domain.exceptions import NotFound
from shared.domain.value_objects import Interval, Money


def _lock_if_possible(queryset):
    """Row-lock the rental only (not the joined item) inside transaction.atomic()."""
    if not transaction.get_connection().in_atomic_block:
        return queryset
    return queryset.select_for_update(of=("self",))


class DjangoRentalRepository:

    def get(self, rental_id: UUID, lock: bool = False) -> Rental:
        queryset = RentalModel.objects.select_related("item").filter(pk=rental_id)
        if lock:
            queryset = _lock_if_possible(queryset)
        row = queryset.first()
        if row is None:
            raise NotFound(f"Rental {rental_id} not found", rental_id=str(rental_id))
        return self._to_domain(row)

    def add(self, rental: Rental) -> None:
        RentalModel.objects.create(**self._to_fields(rental), id=rental.id)

    def save(self, rental: Rental) -> None:
        updated = RentalModel.objects.filter(pk=rental.id).update(**self._to_fields(rental))
        if not updated:
            raise NotFound(f"Rental {rental.id} not found", rental_id=str(rental.id))

    def stale_ids(self, idle_since: datetime) -> List[UUID]:
        """Unpaid rentals that have not changed since the cutoff."""
        return list(
            RentalModel.objects.filter(
                status__in=[
                    RentalModel.Status.PENDING,
                    RentalModel.Status.APPROVED,
                    RentalModel.Status.PAYMENT_FAILED,
                ],
                updated_at__lt=idle_since,
            ).exclude(
                payments__status__in=["completed", "refunded"],
            ).distinct().values_list("id", flat=True)
        )

    def pending_settlement_ids(self) -> List[UUID]:
        return list(
            RentalModel.objects.filter(
                status__in=[RentalModel.Status.CANCELLED, RentalModel.Status.REJECTED],
                settlement_status=RentalModel.SettlementStatus.PENDING,
            ).values_list("id", flat=True)
        )

    @staticmethod
    def _to_fields(rental: Rental) -> dict:
        return {
            "item_id": rental.item_id,
            "renter_id": rental.renter_id,
            "rental_type": rental.rental_type.value,
            "start": rental.period.start,
            "end": rental.period.end,
            "status": rental.status.value,
            "total_amount": rental.total.amount,
            "currency": rental.total.currency,
            "payment_attempts": rental.payment_attempts,
            "platform_fee": rental.split.platform_fee.amount if rental.split else None,
            "owner_payout": rental.split.owner_payout.amount if rental.split else None,
            "settlement_status": rental.settlement_status.value,
            "reason": rental.reason,
            "decided_at": rental.decided_at,
            "cancelled_at": rental.cancelled_at,
            "completed_at": rental.completed_at,
            "created_at": rental.created_at,
            "updated_at": rental.updated_at,
        }

    @staticmethod
    def _to_domain(row: RentalModel) -> Rental:
        total = Money(row.total_amount, row.currency)
        split = None
        if row.platform_fee is not None and row.owner_payout is not None:
            split = FeeSplit(
                total=total,
                platform_fee=Money(row.platform_fee, row.currency),
                owner_payout=Money(row.owner_payout, row.currency),
            )
        return Rental(
            id=row.pk,
            item_id=row.item_id,
            renter_id=row.renter_id,
            owner_id=row.item.owner_id,
            rental_type=RentalType(row.rental_type),
            period=Interval(row.start, row.end),
            total=total,
            status=RentalStatus(row.status),
            payment_attempts=row.payment_attempts,
            split=split,
            settlement_status=SettlementStatus(row.settlement_status),
            reason=row.reason,
            decided_at=row.decided_at,
            cancelled_at=row.cancelled_at,
            completed_at=row.completed_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
