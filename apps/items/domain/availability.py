"""
Item Availability

Pure conflict detection for rental intervals. All reservations of an
item's time go through an ``ItemCalendar`` built from the rows that
overlap the proposed interval, so the decision itself has no side effects.

Both existing rentals in an active status and owner-declared availability
windows count as reservations: a proposed interval conflicts with either
when ``start1 < end2 and start2 < end1``. Touching endpoints never conflict.

Strategy against double bookings:
1. Domain validation: ItemCalendar.find_conflicts() checks for overlaps
2. Per-item in-process lock around "check, then insert"
3. Pessimistic locking: SELECT FOR UPDATE on the item row
"""

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from uuid import UUID

from shared.domain.exceptions import InvalidInterval, ValidationFailed
from shared.domain.value_objects import Interval

ACTIVE_RENTAL_STATUSES = ('pending', 'approved')

MAX_RECURRING_OCCURRENCES = 366


@dataclass(frozen=True)
class ItemSnapshot:
    """Read-only view of an item's listing data used by the rental core."""
    id: int
    owner_id: int
    category: str
    currency: str
    is_available: bool
    hourly_rate: Optional[Decimal] = None
    daily_rate: Optional[Decimal] = None
    weekly_rate: Optional[Decimal] = None
    security_deposit: Optional[Decimal] = None


@dataclass(frozen=True)
class BookedInterval:
    """An existing rental occupying part of the item's calendar."""
    rental_id: UUID
    interval: Interval
    status: str


@dataclass(frozen=True)
class WindowInterval:
    """An owner-declared availability window."""
    window_id: int
    interval: Interval
    note: str = ''


@dataclass(frozen=True)
class ConflictReport:
    proposed: Interval
    conflicting_bookings: List[BookedInterval] = field(default_factory=list)
    conflicting_windows: List[WindowInterval] = field(default_factory=list)

    @property
    def conflict(self) -> bool:
        return bool(self.conflicting_bookings or self.conflicting_windows)

    @property
    def booking_ids(self) -> List[str]:
        return [str(booking.rental_id) for booking in self.conflicting_bookings]

    @property
    def window_ids(self) -> List[int]:
        return [window.window_id for window in self.conflicting_windows]

    def to_dict(self) -> dict:
        return {
            'conflict': self.conflict,
            'conflicting_bookings': self.booking_ids,
            'conflicting_windows': self.window_ids,
        }


@dataclass
class ItemCalendar:
    """
    Reservations of one item's time

    Usage:
        calendar = store.calendar(item_id, proposed)
        report = calendar.find_conflicts(proposed)
        if report.conflict:
            raise IntervalConflict(...)
    """

    item_id: int
    bookings: List[BookedInterval] = field(default_factory=list)
    windows: List[WindowInterval] = field(default_factory=list)

    def find_conflicts(
        self,
        proposed: Interval,
        exclude_rental_id: Optional[UUID] = None,
    ) -> ConflictReport:
        bookings = [
            booking for booking in self.bookings
            if booking.status in ACTIVE_RENTAL_STATUSES
            and booking.rental_id != exclude_rental_id
            and booking.interval.overlaps_with(proposed)
        ]
        windows = [
            window for window in self.windows
            if window.interval.overlaps_with(proposed)
        ]
        return ConflictReport(
            proposed=proposed,
            conflicting_bookings=bookings,
            conflicting_windows=windows,
        )

    def can_allocate(self, proposed: Interval, exclude_rental_id: Optional[UUID] = None) -> bool:
        return not self.find_conflicts(proposed, exclude_rental_id).conflict


# ===== Recurring windows =====

class Recurrence(Enum):
    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'


def add_months(moment: datetime, months: int) -> datetime:
    """Same day of month ``months`` later, clamped to the month's last day."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _nth_start(first: datetime, frequency: Recurrence, steps: int) -> datetime:
    if frequency == Recurrence.DAILY:
        return first + timedelta(days=steps)
    if frequency == Recurrence.WEEKLY:
        return first + timedelta(weeks=steps)
    return add_months(first, steps)


def expand_recurrence(first: Interval, frequency: Recurrence, every: int, until: datetime) -> List[Interval]:
    """
    Occurrences of ``first`` repeated every ``every`` days, weeks or months

    Each occurrence keeps the duration of ``first`` and is computed from
    ``first.start`` directly, so monthly series do not drift after a short
    month. Occurrences starting after ``until`` are not generated.
    """
    if every < 1:
        raise ValidationFailed("Recurrence interval must be at least 1.")
    if until < first.start:
        raise InvalidInterval("Recurrence must not end before the first occurrence.")

    occurrences: List[Interval] = []
    steps = 0
    while True:
        start = _nth_start(first.start, frequency, steps)
        if start > until:
            break
        occurrence = Interval(start, start + first.duration)
        if occurrences and occurrences[-1].overlaps_with(occurrence):
            raise InvalidInterval("Occurrences overlap each other; shorten the window or repeat it less often.")
        occurrences.append(occurrence)
        if len(occurrences) > MAX_RECURRING_OCCURRENCES:
            raise ValidationFailed(
                f"A recurring window can have at most {MAX_RECURRING_OCCURRENCES} occurrences.",
            )
        steps += every
    return occurrences
