"""Availability resolver: conflict checks and owner-managed windows."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional
from uuid import UUID
import logging

from apps.items.domain.availability import (
    ConflictReport,
    ItemCalendar,
    ItemSnapshot,
    Recurrence,
    WindowInterval,
    expand_recurrence,
)
from apps.items.repositories import IntervalStore
from shared.domain.exceptions import IntervalConflict, PermissionDenied
from shared.domain.value_objects import Actor, Interval
from shared.infrastructure.datastore import Datastore
from shared.infrastructure.locks import KeyedLock

logger = logging.getLogger(__name__)


def conflict_error(report: ConflictReport) -> IntervalConflict:
    """Build the 409 error for a conflicting report, naming what blocks it."""
    return IntervalConflict(
        f"The requested period {report.proposed} is not available.",
        conflicting_bookings=report.booking_ids,
        conflicting_windows=report.window_ids,
    )


def occurrence_conflict(report: ConflictReport) -> dict:
    return {
        "start": report.proposed.start.isoformat(),
        "end": report.proposed.end.isoformat(),
        "conflicting_bookings": report.booking_ids,
        "conflicting_windows": report.window_ids,
    }


class AvailabilityService:
    """
    Decides whether a proposed interval is free for an item

    Every "check conflict, then insert" sequence runs with the item's keyed
    lock held and the item row locked inside the transaction, so two
    concurrent writers for the same item are serialized. Read-only checks
    take no lock.
    """

    def __init__(self, datastore: Datastore, locks: KeyedLock, store: Optional[IntervalStore] = None):
        self.datastore = datastore
        self.locks = locks
        self.store = store or IntervalStore()

    @contextmanager
    def item_guard(self, item_id: int) -> Iterator[None]:
        """Serialize writers of one item's calendar within this process."""
        with self.locks.hold(("item", item_id)):
            yield

    # ===== Queries =====

    def check_conflict(
        self,
        item_id: int,
        interval: Interval,
        exclude_rental_id: Optional[UUID] = None,
    ) -> ConflictReport:
        self.store.get_item(item_id)
        return self.store.calendar(item_id, interval).find_conflicts(interval, exclude_rental_id)

    def calendar(self, item_id: int) -> ItemCalendar:
        self.store.get_item(item_id)
        return self.store.calendar(item_id)

    # ===== Helpers for callers already inside item_guard + transaction =====

    def lock_item(self, item_id: int) -> ItemSnapshot:
        return self.store.get_item(item_id, lock=True)

    def assert_available(
        self,
        item_id: int,
        interval: Interval,
        exclude_rental_id: Optional[UUID] = None,
    ) -> None:
        report = self.store.calendar(item_id, interval).find_conflicts(interval, exclude_rental_id)
        if report.conflict:
            logger.info(
                "Interval %s for item %s conflicts with bookings=%s windows=%s",
                interval, item_id, report.booking_ids, report.window_ids,
            )
            raise conflict_error(report)

    # ===== Commands =====

    def add_window(self, item_id: int, actor: Actor, interval: Interval, note: str = "") -> WindowInterval:
        def _add(uow):
            item = self.lock_item(item_id)
            self._ensure_owner(item, actor)
            self.assert_available(item_id, interval)
            return self.store.add_window(item_id, interval, note)

        with self.item_guard(item_id):
            window = self.datastore.run(_add, name="availability.add_window")

        logger.info("Availability window %s added to item %s: %s", window.window_id, item_id, interval)
        return window

    def add_recurring_windows(
        self,
        item_id: int,
        actor: Actor,
        first: Interval,
        frequency: Recurrence,
        every: int,
        until: datetime,
        note: str = "",
    ) -> List[WindowInterval]:
        """
        Block a repeating series of windows, all of them or none

        Every occurrence is checked against the calendar under one lock and
        one transaction; a single conflict rejects the whole series and the
        error lists each conflicting occurrence.
        """
        occurrences = expand_recurrence(first, frequency, every, until)

        def _add(uow):
            item = self.lock_item(item_id)
            self._ensure_owner(item, actor)
            item_calendar = self.store.calendar(item_id, Interval(occurrences[0].start, occurrences[-1].end))
            reports = [item_calendar.find_conflicts(occurrence) for occurrence in occurrences]
            conflicts = [report for report in reports if report.conflict]
            if conflicts:
                logger.info(
                    "Recurring window for item %s conflicts on %d of %d occurrences",
                    item_id, len(conflicts), len(occurrences),
                )
                raise IntervalConflict(
                    "Some occurrences of the recurring window are not available.",
                    conflicting_occurrences=[occurrence_conflict(report) for report in conflicts],
                )
            return [self.store.add_window(item_id, occurrence, note) for occurrence in occurrences]

        with self.item_guard(item_id):
            windows = self.datastore.run(_add, name="availability.add_recurring_windows")

        logger.info(
            "%d %s availability windows added to item %s (first %s)",
            len(windows), frequency.value, item_id, first,
        )
        return windows

    def remove_window(self, item_id: int, actor: Actor, window_id: int) -> None:
        def _remove(uow):
            item = self.lock_item(item_id)
            self._ensure_owner(item, actor)
            self.store.delete_window(item_id, window_id)

        with self.item_guard(item_id):
            self.datastore.run(_remove, name="availability.remove_window")

        logger.info("Availability window %s removed from item %s", window_id, item_id)

    @staticmethod
    def _ensure_owner(item: ItemSnapshot, actor: Actor) -> None:
        if actor.user_id != item.owner_id and not actor.is_staff:
            raise PermissionDenied("Only the item owner can manage availability windows.")
