"""Tests for the Stripe gateway's request shaping and error mapping."""

from __future__ import annotations

from decimal import Decimal
from unittest import mock

import stripe
from django.test import SimpleTestCase, override_settings

from apps.finances.gateway import StripeGateway, load_gateway, to_cents
from apps.finances.tests.fakes import FakePaymentGateway
from shared.domain.exceptions import ProviderDeclined, ProviderError, ProviderUnavailable
from shared.domain.value_objects import Money


class StripeGatewayTests(SimpleTestCase):

    def setUp(self) -> None:
        self.gateway = StripeGateway(api_key="sk_test_123")
        self.amount = Money(Decimal("250.00"), "USD")

    @mock.patch("apps.finances.gateway.stripe.PaymentIntent.create")
    def test_create_intent_sends_cents_and_idempotency_key(self, create) -> None:
        create.return_value = {
            "id": "pi_1",
            "status": "requires_payment_method",
            "client_secret": "pi_1_secret_x",
            "amount": 25000,
            "currency": "usd",
        }

        result = self.gateway.create_intent(self.amount, {"payment_id": "p1"}, idempotency_key="payment:p1:intent")

        kwargs = create.call_args.kwargs
        self.assertEqual(kwargs["amount"], 25000)
        self.assertEqual(kwargs["currency"], "usd")
        self.assertEqual(kwargs["metadata"], {"payment_id": "p1"})
        self.assertEqual(kwargs["idempotency_key"], "payment:p1:intent")
        self.assertEqual(result.intent_id, "pi_1")
        self.assertEqual(result.client_secret, "pi_1_secret_x")
        self.assertEqual(result.amount, self.amount)

    @mock.patch("apps.finances.gateway.stripe.PaymentIntent.create")
    def test_card_error_becomes_declined(self, create) -> None:
        create.side_effect = stripe.CardError("Your card has insufficient funds.", None, "card_declined")

        with self.assertRaises(ProviderDeclined) as ctx:
            self.gateway.create_intent(self.amount, {}, idempotency_key="k")

        self.assertEqual(ctx.exception.details["decline_code"], "card_declined")
        self.assertEqual(ctx.exception.status_code, 402)

    @mock.patch("apps.finances.gateway.stripe.Refund.create")
    def test_connection_error_is_retryable(self, create) -> None:
        create.side_effect = stripe.APIConnectionError("Network down")

        with self.assertRaises(ProviderUnavailable):
            self.gateway.refund("pi_1", Money(Decimal("10.00")), idempotency_key="k")

    @mock.patch("apps.finances.gateway.stripe.Transfer.create")
    def test_auth_error_is_a_configuration_problem(self, create) -> None:
        create.side_effect = stripe.AuthenticationError("Invalid API key")

        with self.assertLogs("apps.finances.gateway", level="ERROR"):
            with self.assertRaises(ProviderError) as ctx:
                self.gateway.create_transfer(self.amount, "acct_1", {}, idempotency_key="k")

        self.assertNotIsInstance(ctx.exception, ProviderUnavailable)

    @mock.patch("apps.finances.gateway.stripe.PaymentIntent.cancel")
    def test_cancel_of_settled_intent_is_not_an_error(self, cancel) -> None:
        cancel.side_effect = stripe.InvalidRequestError("This PaymentIntent has already succeeded.", None)

        result = self.gateway.cancel_intent("pi_1", idempotency_key="payment:p1:cancel")

        self.assertEqual(result.status, "unchanged")

    @mock.patch("apps.finances.gateway.stripe.PaymentIntent.capture")
    def test_partial_capture(self, capture) -> None:
        capture.return_value = {"id": "pi_1", "status": "succeeded", "amount": 20000, "currency": "usd"}

        result = self.gateway.capture_intent("pi_1", Money(Decimal("200.00")))

        capture.assert_called_once_with("pi_1", amount_to_capture=20000)
        self.assertEqual(result.status, "succeeded")

    @mock.patch("apps.finances.gateway.stripe.PaymentIntent.confirm")
    def test_confirm_passes_payment_method(self, confirm) -> None:
        confirm.return_value = {"id": "pi_1", "status": "succeeded"}

        result = self.gateway.confirm_intent("pi_1", "pm_card_visa")

        confirm.assert_called_once_with("pi_1", payment_method="pm_card_visa")
        self.assertIsNone(result.amount)

    def test_missing_key_fails_before_calling_stripe(self) -> None:
        with mock.patch("apps.finances.gateway.stripe.Refund.create") as create:
            with self.assertRaises(ProviderError):
                StripeGateway(api_key="").refund("pi_1", self.amount, idempotency_key="k")

        create.assert_not_called()

    def test_to_cents_rounds_half_up(self) -> None:
        self.assertEqual(to_cents(Decimal("10.005")), 1001)
        self.assertEqual(to_cents(Decimal("0.01")), 1)

    @override_settings(PAYMENT_GATEWAY_CLASS="apps.finances.tests.fakes.FakePaymentGateway")
    def test_gateway_class_comes_from_settings(self) -> None:
        self.assertIsInstance(load_gateway(), FakePaymentGateway)
