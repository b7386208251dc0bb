"""Tests for the payment provider webhook endpoint."""

from __future__ import annotations

import time
from decimal import Decimal

from django.urls import reverse
from rest_framework import status

from apps.finances.models import LedgerEntry, Payment, ProcessedNotification, SecurityDeposit
from apps.finances.tasks import refund_superseded_payments
from apps.finances.tests.fakes import WEBHOOK_SECRET, compute_signature, intent_event, refund_event, signed
from apps.rentals.models import Rental
from apps.rentals.tests.base import MarketplaceAPITestCase
from shared.domain.exceptions import ProviderUnavailable


class PaymentWebhookTests(MarketplaceAPITestCase):

    def _hold(self) -> dict:
        rental_id = self.create_rental()
        self.approve(rental_id)
        return self.open_hold(rental_id)

    def test_succeeded_notification_completes_payment_and_holds_deposit(self) -> None:
        hold = self._hold()

        response = self.succeed(hold)

        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        self.assertEqual(response.data, {"status": "applied"})
        payment = Payment.objects.get(pk=hold["payment_id"])
        self.assertEqual(payment.status, "completed")
        self.assertEqual(payment.risk_score, 12)
        self.assertEqual(payment.risk_level, "normal")
        self.assertIsNotNone(payment.paid_at)
        deposit = SecurityDeposit.objects.get(rental_id=hold["rental_id"])
        self.assertEqual(deposit.status, "held")
        self.assertEqual(deposit.held_amount, Decimal("50.00"))

    def test_redelivered_notification_is_applied_once(self) -> None:
        hold = self._hold()
        self.succeed(hold)

        response = self.succeed(hold)

        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        self.assertEqual(response.data, {"status": "duplicate"})
        self.assertEqual(LedgerEntry.objects.filter(kind="charge").count(), 1)
        self.assertEqual(LedgerEntry.objects.filter(kind="deposit_hold").count(), 1)
        self.assertEqual(ProcessedNotification.objects.filter(event_id="evt_succeeded").count(), 1)

    def test_bad_signature_is_rejected_without_side_effects(self) -> None:
        hold = self._hold()
        envelope = intent_event("evt_forged", "payment_intent.succeeded", self.intent_of(hold), 25000)

        response = self.deliver(envelope, header=f"t={int(time.time())},v1=deadbeef")

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(Payment.objects.get(pk=hold["payment_id"]).status, "pending")
        self.assertFalse(ProcessedNotification.objects.exists())

    def test_missing_signature_is_rejected(self) -> None:
        body, _ = signed(intent_event("evt_unsigned", "payment_intent.succeeded", "pi_x", 100))

        response = self.client.post(reverse("payment-webhook"), data=body, content_type="application/json")

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_stale_timestamp_is_rejected(self) -> None:
        hold = self._hold()
        envelope = intent_event("evt_old", "payment_intent.succeeded", self.intent_of(hold), 25000)
        _, header = signed(envelope, timestamp=int(time.time()) - 3600)

        response = self.deliver(envelope, header=header)

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(Payment.objects.get(pk=hold["payment_id"]).status, "pending")

    def test_malformed_body_returns_bad_request(self) -> None:
        body = b"{not json"
        timestamp = int(time.time())
        header = f"t={timestamp},v1={compute_signature(body, timestamp, WEBHOOK_SECRET)}"

        response = self.client.post(
            reverse("payment-webhook"),
            data=body,
            content_type="application/json",
            HTTP_STRIPE_SIGNATURE=header,
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "malformed_notification")

    def test_unknown_payment_returns_not_found(self) -> None:
        response = self.deliver(intent_event("evt_orphan_intent", "payment_intent.succeeded", "pi_missing", 1000))

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data["detail"], "Payment not found")

    def test_unknown_event_type_is_acknowledged(self) -> None:
        envelope = {"id": "evt_customer", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}

        response = self.deliver(envelope)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data, {"status": "ignored"})
        self.assertTrue(ProcessedNotification.objects.filter(event_id="evt_customer", outcome="ignored").exists())

    def test_failure_after_success_is_stale(self) -> None:
        hold = self._hold()
        self.succeed(hold)

        response = self.fail(hold, event_id="evt_late_failure")

        self.assertEqual(response.data, {"status": "stale"})
        self.assertEqual(Payment.objects.get(pk=hold["payment_id"]).status, "completed")
        self.assertEqual(Rental.objects.get(pk=hold["rental_id"]).status, "approved")

    def test_failed_notification_marks_rental_payment_failed(self) -> None:
        hold = self._hold()

        response = self.fail(hold)

        self.assertEqual(response.data, {"status": "applied"})
        payment = Payment.objects.get(pk=hold["payment_id"])
        self.assertEqual(payment.status, "failed")
        self.assertEqual(payment.failure_code, "insufficient_funds")
        self.assertEqual(Rental.objects.get(pk=hold["rental_id"]).status, "payment_failed")

    def test_retry_opens_a_new_attempt(self) -> None:
        hold = self._hold()
        self.fail(hold)

        response = self.client.post(reverse("payment-retry"), {"rental": hold["rental_id"]}, format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        self.assertNotEqual(response.data["payment_id"], hold["payment_id"])
        self.assertEqual(Payment.objects.get(pk=response.data["payment_id"]).attempt, 2)
        rental = Rental.objects.get(pk=hold["rental_id"])
        self.assertEqual(rental.status, "pending")
        self.assertEqual(rental.payment_attempts, 2)

    def test_exhausted_retries_cancel_the_rental(self) -> None:
        hold = self._hold()
        self.fail(hold, event_id="evt_failed_1")
        for attempt in (2, 3):
            hold = self.client.post(reverse("payment-retry"), {"rental": hold["rental_id"]}, format="json").data
            self.fail(hold, event_id=f"evt_failed_{attempt}")

        response = self.client.post(reverse("payment-retry"), {"rental": hold["rental_id"]}, format="json")

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT, response.data)
        self.assertEqual(response.data["code"], "payment_retries_exhausted")
        rental = Rental.objects.get(pk=hold["rental_id"])
        self.assertEqual(rental.status, "cancelled")
        self.assertEqual(rental.reason, "Payment retries exhausted")

    def _retried(self) -> tuple:
        first = self._hold()
        self.fail(first, event_id="evt_failed_1")
        response = self.client.post(reverse("payment-retry"), {"rental": first["rental_id"]}, format="json")
        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        return first, response.data

    def test_retry_voids_the_failed_intent(self) -> None:
        first, _ = self._retried()

        self.assertEqual(Payment.objects.get(pk=first["payment_id"]).status, "cancelled")
        self.assertEqual(
            self.gateway.calls_to("cancel_intent"),
            [("cancel_intent", self.intent_of(first), f"payment:{first['payment_id']}:cancel")],
        )

    def test_capture_of_replaced_attempt_is_refunded_in_full(self) -> None:
        first, second = self._retried()

        response = self.succeed(first, event_id="evt_late_first")

        self.assertEqual(response.data, {"status": "orphaned"})
        payment = Payment.objects.get(pk=first["payment_id"])
        self.assertEqual(payment.status, "refunded")
        self.assertEqual(payment.refunded_amount, Decimal("250.00"))
        (call,) = self.gateway.calls_to("refund")
        self.assertEqual(call[1], self.intent_of(first))
        self.assertEqual(call[2].amount, Decimal("250.00"))
        self.assertEqual(call[3], f"payment:{first['payment_id']}:orphan_refund")
        self.assertFalse(SecurityDeposit.objects.filter(rental_id=first["rental_id"], status="held").exists())
        self.assertEqual(Rental.objects.get(pk=first["rental_id"]).status, "pending")

        response = self.succeed(second, event_id="evt_second")

        self.assertEqual(response.data, {"status": "applied"})
        self.assertEqual(Payment.objects.get(pk=second["payment_id"]).status, "completed")
        deposit = SecurityDeposit.objects.get(rental_id=first["rental_id"])
        self.assertEqual(deposit.status, "held")
        self.assertEqual(str(deposit.payment_id), second["payment_id"])
        rental = Rental.objects.get(pk=first["rental_id"])
        self.assertEqual(rental.status, "approved")
        self.assertEqual(rental.settlement_status, "not_required")
        self.assertEqual(len(self.gateway.refunds), 1)

    def test_replaced_attempt_captured_after_the_current_one(self) -> None:
        first, second = self._retried()
        self.succeed(second, event_id="evt_second")

        response = self.succeed(first, event_id="evt_late_first")

        self.assertEqual(response.data, {"status": "orphaned"})
        self.assertEqual(Payment.objects.get(pk=first["payment_id"]).status, "refunded")
        self.assertEqual(Payment.objects.get(pk=second["payment_id"]).status, "completed")
        self.assertEqual([refund.amount.amount for refund in self.gateway.refunds], [Decimal("250.00")])
        self.assertEqual(Rental.objects.get(pk=first["rental_id"]).status, "approved")

    def test_failed_refund_of_replaced_attempt_is_retried_later(self) -> None:
        first, _ = self._retried()
        self.gateway.fail_next("refund", ProviderUnavailable())

        response = self.succeed(first, event_id="evt_late_first")

        self.assertEqual(response.data, {"status": "orphaned"})
        self.assertEqual(Payment.objects.get(pk=first["payment_id"]).status, "completed")
        key = f"payment:{first['payment_id']}:orphan_refund"
        self.assertEqual(LedgerEntry.objects.get(idempotency_key=key).status, "failed")

        result = refund_superseded_payments()

        self.assertEqual(result, {"pending": 1, "refunded": 1})
        self.assertEqual(Payment.objects.get(pk=first["payment_id"]).status, "refunded")
        self.assertEqual(LedgerEntry.objects.get(idempotency_key=key).status, "succeeded")
        self.assertEqual(refund_superseded_payments(), {"pending": 0, "refunded": 0})


    def test_capture_after_cancellation_is_refunded(self) -> None:
        rental_id = self.create_rental()
        hold = self.open_hold(rental_id)
        self.client.post(reverse("rental-cancel", args=[rental_id]), {}, format="json")

        response = self.succeed(hold, event_id="evt_late_capture")

        self.assertEqual(response.data, {"status": "orphaned"})
        rental = Rental.objects.get(pk=rental_id)
        self.assertEqual(rental.status, "cancelled")
        self.assertEqual(rental.settlement_status, "settled")
        payment = Payment.objects.get(pk=hold["payment_id"])
        self.assertEqual(payment.status, "refunded")
        self.assertEqual(payment.refunded_amount, Decimal("200.00"))
        self.assertEqual(rental.security_deposit.status, "released")
        refunded = sorted(refund.amount.amount for refund in self.gateway.refunds)
        self.assertEqual(refunded, [Decimal("50.00"), Decimal("200.00")])

    def test_notification_located_through_metadata(self) -> None:
        hold = self._hold()
        intent_id = self.intent_of(hold)
        Payment.objects.filter(pk=hold["payment_id"]).update(provider_intent_id=None)
        envelope = intent_event(
            "evt_by_metadata",
            "payment_intent.succeeded",
            intent_id,
            25000,
            metadata={"payment_id": hold["payment_id"]},
        )

        response = self.deliver(envelope)

        self.assertEqual(response.data, {"status": "applied"})
        payment = Payment.objects.get(pk=hold["payment_id"])
        self.assertEqual(payment.provider_intent_id, intent_id)
        self.assertEqual(payment.status, "completed")

    def test_full_refund_from_dashboard(self) -> None:
        rental_id = self.paid_rental()
        payment = Payment.objects.get(rental_id=rental_id)

        response = self.deliver(refund_event("evt_refunded", payment.provider_intent_id, 25000, refunded=True))

        self.assertEqual(response.data, {"status": "applied"})
        payment.refresh_from_db()
        self.assertEqual(payment.status, "refunded")
        self.assertEqual(payment.refunded_amount, Decimal("200.00"))
        self.assertEqual(SecurityDeposit.objects.get(rental_id=rental_id).status, "released")
        self.assertEqual(self.gateway.calls_to("refund"), [])

    def test_partial_refund_notification_is_ignored(self) -> None:
        rental_id = self.paid_rental()
        payment = Payment.objects.get(rental_id=rental_id)

        response = self.deliver(refund_event("evt_partial", payment.provider_intent_id, 5000, refunded=False))

        self.assertEqual(response.data, {"status": "ignored"})
        payment.refresh_from_db()
        self.assertEqual(payment.status, "completed")

    def test_canceled_intent_voids_payment(self) -> None:
        hold = self._hold()
        envelope = intent_event(
            "evt_canceled",
            "payment_intent.canceled",
            self.intent_of(hold),
            25000,
            cancellation_reason="abandoned",
        )

        response = self.deliver(envelope)

        self.assertEqual(response.data, {"status": "applied"})
        self.assertEqual(Payment.objects.get(pk=hold["payment_id"]).status, "cancelled")
