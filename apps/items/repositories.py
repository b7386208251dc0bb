"""Data access for item calendars (availability windows and active rentals)."""

from __future__ import annotations

from typing import List, Optional

from django.apps import apps as django_apps  # type: ignore
from django.db import transaction  # type: ignore
from django.db.models import Q  # type: ignore

from apps.items.domain.availability import (
    ACTIVE_RENTAL_STATUSES,
    BookedInterval,
    ItemCalendar,
    ItemSnapshot,
    WindowInterval,
)
from apps.items.models import AvailabilityWindow, Item
from shared.domain.exceptions import NotFound
from shared.domain.value_objects import Interval


def _lock_queryset_if_possible(queryset):
    """Apply select_for_update when inside transaction.atomic()."""

    if not transaction.get_connection().in_atomic_block:
        return queryset

    return queryset.select_for_update()


def _overlapping(interval: Interval) -> Q:
    return Q(start__lt=interval.end) & Q(end__gt=interval.start)


def to_snapshot(item: Item) -> ItemSnapshot:
    return ItemSnapshot(
        id=item.pk,
        owner_id=item.owner_id,
        category=item.category,
        currency=item.currency,
        is_available=item.is_available,
        hourly_rate=item.hourly_rate,
        daily_rate=item.daily_rate,
        weekly_rate=item.weekly_rate,
        security_deposit=item.security_deposit,
    )


class IntervalStore:
    """
    Range queries over an item's reservations

    Windows live in ``items.AvailabilityWindow``; bookings are the active
    rows of ``rentals.Rental``, which this store only reads.
    """

    def get_item(self, item_id: int, lock: bool = False) -> ItemSnapshot:
        queryset = Item.objects.filter(pk=item_id)
        if lock:
            queryset = _lock_queryset_if_possible(queryset)
        item = queryset.first()
        if item is None:
            raise NotFound(f"Item {item_id} not found", item_id=item_id)
        return to_snapshot(item)

    def calendar(self, item_id: int, interval: Optional[Interval] = None) -> ItemCalendar:
        """Reservations of the item, restricted to ``interval`` when given."""
        return ItemCalendar(
            item_id=item_id,
            bookings=self.active_bookings(item_id, interval),
            windows=self.windows(item_id, interval),
        )

    def active_bookings(self, item_id: int, interval: Optional[Interval] = None) -> List[BookedInterval]:
        Rental = django_apps.get_model("rentals", "Rental")
        queryset = Rental.objects.filter(item_id=item_id, status__in=ACTIVE_RENTAL_STATUSES)
        if interval is not None:
            queryset = queryset.filter(_overlapping(interval))
        return [
            BookedInterval(
                rental_id=row.pk,
                interval=Interval(row.start, row.end),
                status=row.status,
            )
            for row in queryset.order_by("start")
        ]

    def windows(self, item_id: int, interval: Optional[Interval] = None) -> List[WindowInterval]:
        queryset = AvailabilityWindow.objects.filter(item_id=item_id)
        if interval is not None:
            queryset = queryset.filter(_overlapping(interval))
        return [self._to_window(row) for row in queryset.order_by("start")]

    def add_window(self, item_id: int, interval: Interval, note: str = "") -> WindowInterval:
        row = AvailabilityWindow.objects.create(
            item_id=item_id,
            start=interval.start,
            end=interval.end,
            note=note,
        )
        return self._to_window(row)

    def delete_window(self, item_id: int, window_id: int) -> None:
        deleted, _ = AvailabilityWindow.objects.filter(pk=window_id, item_id=item_id).delete()
        if not deleted:
            raise NotFound(
                f"Availability window {window_id} not found for item {item_id}",
                window_id=window_id,
            )

    @staticmethod
    def _to_window(row: AvailabilityWindow) -> WindowInterval:
        return WindowInterval(
            window_id=row.pk,
            interval=Interval(row.start, row.end),
            note=row.note,
        )
