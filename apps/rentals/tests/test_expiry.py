"""Tests for the background expiry of unpaid rentals."""

from __future__ import annotations

from datetime import timedelta

from django.urls import reverse
from django.utils import timezone

from apps.finances.models import Payment
from apps.rentals.application.command_handlers import ExpireRentalCommand
from apps.rentals.models import Rental
from apps.rentals.tasks import expire_stale_rentals
from apps.rentals.tests.base import MarketplaceAPITestCase


class RentalExpiryTests(MarketplaceAPITestCase):

    def _age(self, rental_id: str, minutes: int = 120) -> None:
        Rental.objects.filter(pk=rental_id).update(updated_at=timezone.now() - timedelta(minutes=minutes))

    def test_stale_pending_rental_is_cancelled(self) -> None:
        rental_id = self.create_rental()
        self._age(rental_id)

        result = expire_stale_rentals()

        self.assertEqual(result, {"checked": 1, "expired": 1})
        rental = Rental.objects.get(pk=rental_id)
        self.assertEqual(rental.status, "cancelled")
        self.assertEqual(rental.reason, "Payment hold expired")

    def test_recent_rental_is_left_alone(self) -> None:
        rental_id = self.create_rental()

        result = expire_stale_rentals()

        self.assertEqual(result, {"checked": 0, "expired": 0})
        self.assertEqual(Rental.objects.get(pk=rental_id).status, "pending")

    def test_expiry_voids_open_hold(self) -> None:
        rental_id = self.create_rental()
        hold = self.open_hold(rental_id)
        self._age(rental_id)

        expire_stale_rentals()

        self.assertEqual(Payment.objects.get(pk=hold["payment_id"]).status, "cancelled")
        intent_id = self.intent_of(hold)
        self.assertEqual(
            self.gateway.calls_to("cancel_intent"),
            [("cancel_intent", intent_id, f"payment:{hold['payment_id']}:cancel")],
        )

    def test_failed_payment_rental_expires(self) -> None:
        rental_id = self.create_rental()
        hold = self.open_hold(rental_id)
        self.fail(hold)
        self._age(rental_id)

        result = expire_stale_rentals()

        self.assertEqual(result["expired"], 1)
        self.assertEqual(Rental.objects.get(pk=rental_id).status, "cancelled")
        self.assertEqual(Payment.objects.get(pk=hold["payment_id"]).status, "cancelled")
        self.assertEqual(self.gateway.calls_to("cancel_intent")[0][1], self.intent_of(hold))

    def test_paid_rental_never_expires(self) -> None:
        rental_id = self.paid_rental()
        self._age(rental_id)

        result = expire_stale_rentals()

        self.assertEqual(result, {"checked": 0, "expired": 0})
        self.assertEqual(Rental.objects.get(pk=rental_id).status, "approved")

    def test_expire_handler_is_a_noop_for_terminal_rentals(self) -> None:
        rental_id = self.create_rental()
        self.as_user(self.owner)
        self.client.post(reverse("rental-decide", args=[rental_id]), {"decision": "reject"}, format="json")

        expired = self.services.expire_rental.handle(ExpireRentalCommand(rental_id=rental_id))

        self.assertFalse(expired)
        self.assertEqual(Rental.objects.get(pk=rental_id).status, "rejected")
