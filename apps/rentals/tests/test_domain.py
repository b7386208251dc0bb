import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from apps.finances.domain.fees import compute_split
from apps.items.domain.availability import ItemSnapshot
from apps.rentals.domain.entities import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    Decision,
    Rental,
    RentalStatus,
    SettlementStatus,
)
from apps.rentals.domain.pricing import RentalType, billable_units, deposit_for, quote
from shared.domain.exceptions import (
    InvalidRentalType,
    InvalidTransition,
    PaymentRetriesExhausted,
    PermissionDenied,
)
from shared.domain.value_objects import Actor, Interval, Money

START = datetime(2030, 6, 1, 10, 0, tzinfo=timezone.utc)
OWNER = Actor(user_id=1)
RENTER = Actor(user_id=2)
STRANGER = Actor(user_id=3)
STAFF = Actor(user_id=99, is_staff=True)


def period(**delta) -> Interval:
    return Interval(START, START + timedelta(**delta))


def make_item(**rates) -> ItemSnapshot:
    return ItemSnapshot(id=7, owner_id=1, category="tools", currency="USD", is_available=True, **rates)


def make_rental(status=RentalStatus.PENDING) -> Rental:
    rental = Rental.request(
        rental_id=uuid.uuid4(),
        item_id=7,
        renter_id=RENTER.user_id,
        owner_id=OWNER.user_id,
        rental_type=RentalType.DAILY,
        period=period(days=2),
        total=Money(Decimal("200.00")),
    )
    rental.status = status
    return rental


# ===== Pricing =====

@pytest.mark.parametrize(
    "rental_type, delta, units",
    [
        (RentalType.HOURLY, {"minutes": 30}, 1),
        (RentalType.HOURLY, {"hours": 2, "minutes": 1}, 3),
        (RentalType.DAILY, {"hours": 5}, 1),
        (RentalType.DAILY, {"days": 2, "hours": 23}, 2),
        (RentalType.WEEKLY, {"days": 3}, 1),
        (RentalType.WEEKLY, {"days": 8}, 2),
        (RentalType.WEEKLY, {"days": 14}, 2),
    ],
)
def test_billable_units(rental_type, delta, units):
    assert billable_units(rental_type, period(**delta)) == units


def test_quote_uses_rate_of_rental_type():
    item = make_item(hourly_rate=Decimal("12.50"), daily_rate=Decimal("80"))

    result = quote(item, RentalType.HOURLY, period(hours=3))

    assert result.units == 3
    assert result.total == Money(Decimal("37.50"))


def test_quote_without_rate_is_rejected():
    with pytest.raises(InvalidRentalType):
        quote(make_item(daily_rate=Decimal("80")), RentalType.WEEKLY, period(days=7))


def test_unknown_rental_type():
    assert RentalType.parse("Daily") is RentalType.DAILY
    with pytest.raises(InvalidRentalType):
        RentalType.parse("monthly")


def test_deposit_defaults_to_zero():
    assert deposit_for(make_item(daily_rate=Decimal("10"))).is_zero
    assert deposit_for(make_item(security_deposit=Decimal("25"))) == Money(Decimal("25.00"))


# ===== State machine =====

def test_terminal_statuses_have_no_exits():
    for status in TERMINAL_STATUSES:
        assert ALLOWED_TRANSITIONS[status] == set()


def test_every_status_is_reachable_from_pending():
    seen, frontier = {RentalStatus.PENDING}, [RentalStatus.PENDING]
    while frontier:
        for target in ALLOWED_TRANSITIONS[frontier.pop()]:
            if target not in seen:
                seen.add(target)
                frontier.append(target)

    assert seen == set(RentalStatus)


def test_owner_cannot_rent_own_item():
    with pytest.raises(PermissionDenied):
        Rental.request(
            rental_id=uuid.uuid4(),
            item_id=7,
            renter_id=1,
            owner_id=1,
            rental_type=RentalType.DAILY,
            period=period(days=1),
            total=Money(Decimal("10")),
        )


def test_only_owner_decides():
    rental = make_rental()

    with pytest.raises(PermissionDenied):
        rental.decide(RENTER, Decision.APPROVE)
    with pytest.raises(PermissionDenied):
        rental.decide(STAFF, Decision.APPROVE)

    rental.decide(OWNER, Decision.REJECT, "Broken")
    assert rental.status == RentalStatus.REJECTED
    assert rental.reason == "Broken"


def test_terminal_rental_cannot_be_cancelled():
    rental = make_rental(RentalStatus.COMPLETED)

    with pytest.raises(InvalidTransition):
        rental.cancel(RENTER)


def test_stranger_cannot_cancel():
    with pytest.raises(PermissionDenied):
        make_rental().cancel(STRANGER)


def test_cancel_after_capture_requires_settlement():
    rental = make_rental(RentalStatus.APPROVED)

    rental.cancel(RENTER, "Changed plans", payment_captured=True)

    assert rental.settlement_status == SettlementStatus.PENDING
    rental.mark_settled()
    assert rental.settlement_status == SettlementStatus.SETTLED


def test_expire_skips_paid_and_terminal_rentals():
    assert not make_rental(RentalStatus.APPROVED).expire(payment_captured=True)
    assert not make_rental(RentalStatus.REJECTED).expire()

    rental = make_rental(RentalStatus.PAYMENT_FAILED)
    assert rental.expire()
    assert rental.status == RentalStatus.CANCELLED


def test_payment_success_moves_pending_and_failed_forward():
    pending = make_rental()
    failed = make_rental(RentalStatus.PAYMENT_FAILED)
    cancelled = make_rental(RentalStatus.CANCELLED)

    assert pending.payment_succeeded()
    assert failed.payment_succeeded()
    assert not cancelled.payment_succeeded()
    assert pending.status == failed.status == RentalStatus.APPROVED


def test_payment_attempts_are_bounded():
    rental = make_rental()
    for _ in range(3):
        rental.start_payment_attempt(max_attempts=3)

    with pytest.raises(PaymentRetriesExhausted):
        rental.start_payment_attempt(max_attempts=3)

    rental.payment_failed()
    with pytest.raises(PaymentRetriesExhausted):
        rental.retry_payment(RENTER, max_attempts=3)


def test_complete_requires_completed_payment():
    rental = make_rental(RentalStatus.APPROVED)
    split = compute_split(rental.total, Decimal("0.10"))

    with pytest.raises(InvalidTransition):
        rental.complete(OWNER, payment_completed=False, split=split)

    rental.complete(STAFF, payment_completed=True, split=split)
    assert rental.status == RentalStatus.COMPLETED
    assert rental.split.owner_payout == Money(Decimal("180.00"))
