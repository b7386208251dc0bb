"""Concurrent deliveries of the same provider notification."""

from __future__ import annotations

import threading
from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TransactionTestCase
from django.utils import timezone

from apps.finances.models import LedgerEntry, Payment, ProcessedNotification, SecurityDeposit
from apps.finances.tests.fakes import FakePaymentGateway, intent_event, signed
from apps.items.models import Item
from apps.rentals.application.command_handlers import CreateRentalCommand, DecideRentalCommand
from shared.application.bootstrap import bootstrap
from shared.domain.value_objects import Actor

User = get_user_model()


class ConcurrentWebhookTests(TransactionTestCase):
    """The same event delivered by several workers at once is applied exactly once."""

    threads = 5

    def setUp(self) -> None:
        owner = User.objects.create_user(username="owner", password="OwnerPass123")
        renter = User.objects.create_user(username="renter", password="RenterPass123")
        item = Item.objects.create(
            owner=owner,
            title="Camping stove",
            daily_rate=Decimal("30.00"),
            security_deposit=Decimal("20.00"),
            currency="USD",
        )
        self.services = bootstrap(gateway=FakePaymentGateway())
        start = (timezone.now() + timedelta(days=1)).replace(microsecond=0)
        rental = self.services.create_rental.handle(CreateRentalCommand(
            item_id=item.id,
            renter=Actor.from_user(renter),
            start=start,
            end=start + timedelta(days=2),
            rental_type="daily",
        ))
        self.services.decide_rental.handle(DecideRentalCommand(
            rental_id=rental.id,
            actor=Actor.from_user(owner),
            decision="approve",
        ))
        self.hold = self.services.payments.create_hold(rental.id, Actor.from_user(renter))

    def test_duplicate_deliveries_apply_once(self) -> None:
        body, header = signed(intent_event(
            "evt_concurrent",
            "payment_intent.succeeded",
            self.hold.intent_id,
            self.hold.amount.minor_units,
            metadata={"payment_id": str(self.hold.payment_id)},
        ))
        barrier = threading.Barrier(self.threads)
        outcomes, errors = [], []

        def deliver():
            try:
                barrier.wait()
                outcomes.append(self.services.webhooks.handle(body, header).outcome.value)
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)
            finally:
                self.services.datastore.close()

        workers = [threading.Thread(target=deliver) for _ in range(self.threads)]
        for thread in workers:
            thread.start()
        for thread in workers:
            thread.join(timeout=30)

        self.assertEqual(errors, [])
        self.assertEqual(sorted(outcomes), ["applied"] + ["duplicate"] * (self.threads - 1))
        self.assertEqual(Payment.objects.get(pk=self.hold.payment_id).status, "completed")
        self.assertEqual(LedgerEntry.objects.filter(kind="charge").count(), 1)
        self.assertEqual(ProcessedNotification.objects.count(), 1)
        self.assertEqual(SecurityDeposit.objects.get(rental_id=self.hold.rental_id).held_amount, Decimal("20.00"))
