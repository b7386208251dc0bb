import uuid
from decimal import Decimal

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("rentals", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("attempt", models.PositiveSmallIntegerField(default=1)),
                ("provider_intent_id", models.CharField(blank=True, max_length=255, null=True, unique=True)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("deposit_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("currency", models.CharField(max_length=3)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                            ("refunded", "Refunded"),
                            ("cancelled", "Cancelled"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("refunded_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("failure_code", models.CharField(blank=True, max_length=100)),
                ("failure_message", models.CharField(blank=True, max_length=500)),
                ("risk_score", models.PositiveSmallIntegerField(blank=True, null=True)),
                ("risk_level", models.CharField(blank=True, max_length=30)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField()),
                ("updated_at", models.DateTimeField()),
                (
                    "rental",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments",
                        to="rentals.rental",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment",
                "verbose_name_plural": "Payments",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "failed_at"], name="payment_status_failed_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=("rental", "attempt"), name="payment_unique_attempt"),
                    models.CheckConstraint(
                        condition=models.Q(("amount__gt", Decimal("0.00"))),
                        name="payment_positive_amount",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="SecurityDeposit",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "status",
                    models.CharField(
                        choices=[("none", "None"), ("held", "Held"), ("charged", "Charged"), ("released", "Released")],
                        default="none",
                        max_length=20,
                    ),
                ),
                ("currency", models.CharField(max_length=3)),
                ("held_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("charged_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("provider_hold_ref", models.CharField(blank=True, max_length=255)),
                (
                    "pending_action",
                    models.CharField(
                        blank=True,
                        choices=[("charge", "Charge"), ("release", "Release")],
                        max_length=20,
                    ),
                ),
                ("pending_amount", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("held_at", models.DateTimeField(blank=True, null=True)),
                ("settled_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField()),
                ("updated_at", models.DateTimeField()),
                (
                    "payment",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="deposits",
                        to="finances.payment",
                    ),
                ),
                (
                    "rental",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="security_deposit",
                        to="rentals.rental",
                    ),
                ),
            ],
            options={
                "verbose_name": "Security deposit",
                "verbose_name_plural": "Security deposits",
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("charged_amount__lte", models.F("held_amount"))),
                        name="deposit_charge_within_hold",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="LedgerEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("charge", "Rental charge"),
                            ("refund", "Refund"),
                            ("deposit_hold", "Deposit hold"),
                            ("deposit_charge", "Deposit charge"),
                            ("deposit_release", "Deposit release"),
                            ("payout", "Owner payout"),
                        ],
                        max_length=20,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("succeeded", "Succeeded"), ("failed", "Failed")],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(max_length=3)),
                ("idempotency_key", models.CharField(max_length=255, unique=True)),
                ("provider_reference", models.CharField(blank=True, max_length=255)),
                ("error", models.CharField(blank=True, max_length=500)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "payment",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="ledger_entries",
                        to="finances.payment",
                    ),
                ),
                (
                    "rental",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="ledger_entries",
                        to="rentals.rental",
                    ),
                ),
            ],
            options={
                "verbose_name": "Ledger entry",
                "verbose_name_plural": "Ledger entries",
                "ordering": ["created_at"],
                "indexes": [
                    models.Index(fields=["payment", "kind", "status"], name="ledger_payment_kind_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ProcessedNotification",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("event_id", models.CharField(max_length=255, unique=True)),
                ("event_type", models.CharField(max_length=100)),
                ("provider_intent_id", models.CharField(blank=True, max_length=255)),
                ("outcome", models.CharField(blank=True, max_length=50)),
                ("processed_at", models.DateTimeField(auto_now_add=True, db_index=True)),
            ],
            options={
                "verbose_name": "Processed notification",
                "verbose_name_plural": "Processed notifications",
                "ordering": ["-processed_at"],
            },
        ),
        migrations.CreateModel(
            name="PayoutAccount",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("provider_account_id", models.CharField(max_length=255)),
                ("payouts_enabled", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "owner",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="payout_account",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Payout account",
                "verbose_name_plural": "Payout accounts",
            },
        ),
    ]
