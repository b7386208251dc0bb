import random
import time
import uuid
from decimal import ROUND_HALF_UP, Decimal

import pytest

from apps.finances.domain.deposit import DepositAction, DepositStatus, SecurityDeposit
from apps.finances.domain.fees import compute_split, rate_for_category
from apps.finances.domain.notifications import (
    ChargeRefunded,
    MalformedNotification,
    PaymentFailedNotification,
    PaymentSucceeded,
    UnknownNotification,
    parse_notification,
)
from apps.finances.domain.payment import Payment, PaymentStatus
from apps.finances.tests.fakes import WEBHOOK_SECRET, compute_signature, intent_event, refund_event, signed
from apps.finances.webhooks import verify_signature
from shared.domain.exceptions import (
    AlreadyHeld,
    InvalidAmount,
    InvalidSignature,
    InvalidTransition,
    NotHeld,
    SettlementInProgress,
    ValidationFailed,
)
from shared.domain.value_objects import Money


def usd(amount) -> Money:
    return Money(Decimal(str(amount)), "USD")


def make_payment(amount="250.00", deposit="50.00") -> Payment:
    return Payment(rental_id=uuid.uuid4(), attempt=1, amount=usd(amount), deposit=usd(deposit))


def held_deposit(amount="50.00") -> SecurityDeposit:
    deposit = SecurityDeposit(rental_id=uuid.uuid4(), currency="USD")
    deposit.hold(usd(amount), payment_completed=True, payment_id=uuid.uuid4(), hold_ref="pi_1")
    return deposit


# ===== Signatures =====

def test_signature_accepts_matching_header():
    body, header = signed({"id": "evt_1"})

    verify_signature(body, header, WEBHOOK_SECRET)


def test_signature_accepts_any_of_several_v1_values():
    body, header = signed({"id": "evt_1"})
    timestamp, valid = header.split(",")

    verify_signature(body, f"{timestamp},v1=0000,{valid}", WEBHOOK_SECRET)


@pytest.mark.parametrize("header", [None, "", "v1=abc", "t=notanumber,v1=abc", "t=123"])
def test_signature_rejects_malformed_headers(header):
    with pytest.raises(InvalidSignature):
        verify_signature(b"{}", header, WEBHOOK_SECRET)


def test_signature_rejects_tampered_body():
    body, header = signed({"id": "evt_1", "amount": 100})

    with pytest.raises(InvalidSignature):
        verify_signature(body.replace(b"100", b"999"), header, WEBHOOK_SECRET)


def test_signature_rejects_other_secret():
    body, header = signed({"id": "evt_1"}, secret="whsec_other")

    with pytest.raises(InvalidSignature):
        verify_signature(body, header, WEBHOOK_SECRET)


def test_signature_outside_tolerance_is_rejected(monkeypatch):
    body, header = signed({"id": "evt_1"}, timestamp=1_000_000)

    monkeypatch.setattr(time, "time", lambda: 1_000_301)
    with pytest.raises(InvalidSignature):
        verify_signature(body, header, WEBHOOK_SECRET, tolerance=300)

    monkeypatch.setattr(time, "time", lambda: 1_000_299)
    verify_signature(body, header, WEBHOOK_SECRET, tolerance=300)


def test_signature_rejects_non_utf8_body():
    body = b"\xff\xfe"
    timestamp = int(time.time())
    header = f"t={timestamp},v1={compute_signature(body, timestamp, WEBHOOK_SECRET)}"

    with pytest.raises(InvalidSignature):
        verify_signature(body, header, WEBHOOK_SECRET)


def test_unconfigured_secret_rejects_everything():
    body, header = signed({"id": "evt_1"}, secret="")

    with pytest.raises(InvalidSignature):
        verify_signature(body, header, "")


# ===== Notification parsing =====

def test_parse_succeeded_with_risk_outcome():
    envelope = intent_event(
        "evt_1",
        "payment_intent.succeeded",
        "pi_1",
        25000,
        metadata={"payment_id": "abc"},
        amount_received=25000,
        latest_charge={"outcome": {"risk_score": 64, "risk_level": "elevated"}},
    )

    notification = parse_notification(envelope)

    assert isinstance(notification, PaymentSucceeded)
    assert notification.intent_id == "pi_1"
    assert notification.payment_ref == "abc"
    assert notification.amount == usd("250.00")
    assert (notification.risk_score, notification.risk_level) == (64, "elevated")
    assert notification.created is not None


def test_parse_succeeded_reads_legacy_charges_list():
    envelope = intent_event(
        "evt_1", "payment_intent.succeeded", "pi_1", 100,
        charges={"data": [{"outcome": {"risk_score": "7", "risk_level": "normal"}}]},
    )

    notification = parse_notification(envelope)

    assert notification.risk_score == 7


def test_parse_failed_prefers_decline_code():
    envelope = intent_event(
        "evt_2", "payment_intent.payment_failed", "pi_1", 100,
        last_payment_error={"code": "card_declined", "decline_code": "lost_card", "message": "Lost card"},
    )

    notification = parse_notification(envelope)

    assert isinstance(notification, PaymentFailedNotification)
    assert notification.failure_code == "lost_card"
    assert notification.failure_message == "Lost card"


def test_parse_failed_without_error_details():
    notification = parse_notification(intent_event("evt_2", "payment_intent.payment_failed", "pi_1", 100))

    assert notification.failure_code == "unknown"
    assert notification.failure_message == "Payment failed"


def test_parse_charge_refunded_uses_intent_field():
    notification = parse_notification(refund_event("evt_3", "pi_9", 2500, refunded=False))

    assert isinstance(notification, ChargeRefunded)
    assert notification.intent_id == "pi_9"
    assert notification.amount_refunded == usd("25.00")
    assert notification.fully_refunded is False


def test_unknown_type_is_parsed_without_failing():
    notification = parse_notification({"id": "evt_4", "type": "invoice.paid", "data": {"object": {"id": "in_1"}}})

    assert isinstance(notification, UnknownNotification)
    assert notification.event_type == "invoice.paid"


@pytest.mark.parametrize("envelope", [[], "evt", {"type": "payment_intent.succeeded"}, {"id": "evt_5"}])
def test_envelope_without_id_or_type_is_malformed(envelope):
    with pytest.raises(MalformedNotification):
        parse_notification(envelope)


# ===== Payment aggregate =====

def test_payment_amount_must_cover_deposit():
    with pytest.raises(InvalidAmount):
        make_payment(amount="40.00", deposit="50.00")
    with pytest.raises(InvalidAmount):
        make_payment(amount="0", deposit="0")


def test_completed_payment_never_fails_afterwards():
    payment = make_payment()

    assert payment.mark_completed()
    assert not payment.mark_failed("card_declined", "Declined")
    assert not payment.mark_completed()
    assert payment.status == PaymentStatus.COMPLETED
    assert [type(event).__name__ for event in payment.events] == ["PaymentCompleted"]


def test_failed_payment_can_still_complete():
    payment = make_payment()
    payment.mark_failed("insufficient_funds", "No funds")

    assert payment.mark_completed()
    assert payment.failure_code == ""


def test_cancelled_payment_rejects_late_failure_but_accepts_capture():
    payment = make_payment()
    assert payment.mark_cancelled()

    assert not payment.mark_failed("expired", "Expired")
    assert payment.mark_completed()


def test_refunds_are_capped_at_rental_portion():
    payment = make_payment()
    payment.mark_completed()

    payment.record_refund(usd("150.00"))

    assert payment.refundable == usd("50.00")
    with pytest.raises(InvalidAmount):
        payment.ensure_refundable(usd("50.01"))
    with pytest.raises(InvalidAmount):
        payment.ensure_refundable(usd("30.00"), reserved=usd("25.00"))

    payment.record_refund(usd("50.00"))
    assert payment.status == PaymentStatus.REFUNDED


def test_pending_payment_is_not_refundable():
    with pytest.raises(InvalidTransition):
        make_payment().ensure_refundable(usd("1.00"))


def test_external_full_refund_refunds_the_remainder():
    payment = make_payment()
    payment.mark_completed()
    payment.record_refund(usd("20.00"))

    assert payment.mark_refunded_externally()
    assert payment.refunded == usd("200.00")
    assert not payment.mark_refunded_externally()


def test_intent_cannot_be_rebound():
    payment = make_payment()
    payment.attach_intent("pi_1")
    payment.attach_intent("pi_1")

    with pytest.raises(InvalidTransition):
        payment.attach_intent("pi_2")


def test_full_refund_returns_deposit_too():
    payment = make_payment()
    payment.mark_completed()
    payment.record_refund(usd("20.00"))

    assert payment.unreturned == usd("230.00")
    with pytest.raises(InvalidAmount):
        payment.record_full_refund(usd("200.00"))

    payment.record_full_refund(usd("230.00"), "re_1")

    assert payment.status == PaymentStatus.REFUNDED
    assert payment.refunded == usd("250.00")
    assert payment.unreturned == usd("0.00")
    assert payment.refundable == usd("0.00")
    assert payment.events[-1].fully_refunded
    with pytest.raises(InvalidTransition):
        payment.record_full_refund(usd("0.00"))


def test_full_refund_needs_a_capture():
    payment = make_payment()
    payment.mark_failed("card_declined", "Declined")

    with pytest.raises(InvalidTransition):
        payment.record_full_refund(usd("250.00"))


# ===== Security deposit aggregate =====

def test_deposit_needs_completed_payment():
    deposit = SecurityDeposit(rental_id=uuid.uuid4(), currency="USD")

    with pytest.raises(InvalidTransition):
        deposit.hold(usd("50.00"), payment_completed=False, payment_id=uuid.uuid4(), hold_ref="pi_1")
    assert deposit.status == DepositStatus.NONE


def test_deposit_is_held_once():
    deposit = held_deposit()

    with pytest.raises(AlreadyHeld):
        deposit.hold(usd("50.00"), payment_completed=True, payment_id=uuid.uuid4(), hold_ref="pi_1")


def test_charge_keeps_part_and_returns_the_rest():
    deposit = held_deposit()

    deposit.charge(usd("20.00"))

    assert deposit.status == DepositStatus.CHARGED
    assert deposit.returned == usd("30.00")
    with pytest.raises(NotHeld):
        deposit.charge(usd("5.00"))
    with pytest.raises(NotHeld):
        deposit.release()


def test_charge_cannot_exceed_held_amount():
    deposit = held_deposit()

    with pytest.raises(InvalidAmount):
        deposit.claim(DepositAction.CHARGE, usd("50.01"))
    assert deposit.pending_action is None


def test_release_is_idempotent():
    deposit = held_deposit()

    assert deposit.release()
    assert not deposit.release()
    assert deposit.returned == usd("50.00")


def test_open_claim_blocks_a_different_settlement():
    deposit = held_deposit()
    deposit.claim(DepositAction.CHARGE, usd("10.00"))

    deposit.claim(DepositAction.CHARGE, usd("10.00"))
    with pytest.raises(SettlementInProgress):
        deposit.claim(DepositAction.RELEASE)
    with pytest.raises(SettlementInProgress):
        deposit.claim(DepositAction.CHARGE, usd("12.00"))

    deposit.abandon_claim()
    deposit.claim(DepositAction.RELEASE)
    assert deposit.pending_amount == usd("50.00")


# ===== Fees =====

@pytest.mark.parametrize(
    "total, rate, fee",
    [
        ("200.00", "0.10", "20.00"),
        ("0.05", "0.10", "0.01"),
        ("0.04", "0.10", "0.00"),
        ("33.35", "0.15", "5.00"),
        ("99.99", "0", "0.00"),
        ("99.99", "1", "99.99"),
    ],
)
def test_fee_rounds_half_up_and_owner_gets_the_rest(total, rate, fee):
    split = compute_split(usd(total), Decimal(rate))

    assert split.platform_fee == usd(fee)
    assert split.platform_fee + split.owner_payout == usd(total)


def test_fee_split_conserves_the_total_for_random_amounts():
    rng = random.Random(20241019)

    for _ in range(1000):
        total = usd(Decimal(rng.randint(0, 10_000_000)) / 100)
        rate = Decimal(rng.randint(0, 10_000)) / 10_000

        split = compute_split(total, rate)

        expected_fee = (total.amount * rate).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        assert split.platform_fee == usd(expected_fee)
        assert split.platform_fee + split.owner_payout == total
        assert split.owner_payout.amount >= 0


@pytest.mark.parametrize("rate", ["-0.01", "1.01"])
def test_fee_rate_out_of_range(rate):
    with pytest.raises(ValidationFailed):
        compute_split(usd("10.00"), Decimal(rate))


def test_charge_total_includes_deposit():
    split = compute_split(usd("200.00"), Decimal("0.10"), deposit=usd("50.00"))

    assert split.charge_total == usd("250.00")
    assert split.owner_payout == usd("180.00")


def test_category_rate_override():
    overrides = {"tools": Decimal("0.15")}

    assert rate_for_category("tools", "0.10", overrides) == Decimal("0.15")
    assert rate_for_category("sports", "0.10", overrides) == Decimal("0.10")
    assert rate_for_category("tools", "0.10") == Decimal("0.10")
