"""Financial models: payments, deposits, ledger and webhook bookkeeping."""

from __future__ import annotations

import uuid
from decimal import Decimal

from django.conf import settings  # type: ignore
from django.db import models  # type: ignore
from django.utils.translation import gettext_lazy as _  # type: ignore


class Payment(models.Model):
    """One payment attempt for a rental (rental charge + security deposit)."""

    class Status(models.TextChoices):
        PENDING = "pending", _("Pending")
        COMPLETED = "completed", _("Completed")
        FAILED = "failed", _("Failed")
        REFUNDED = "refunded", _("Refunded")
        CANCELLED = "cancelled", _("Cancelled")

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    rental = models.ForeignKey(
        "rentals.Rental",
        on_delete=models.PROTECT,
        related_name="payments",
    )
    attempt = models.PositiveSmallIntegerField(default=1)
    provider_intent_id = models.CharField(max_length=255, unique=True, null=True, blank=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    deposit_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    currency = models.CharField(max_length=3)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    refunded_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    failure_code = models.CharField(max_length=100, blank=True)
    failure_message = models.CharField(max_length=500, blank=True)
    risk_score = models.PositiveSmallIntegerField(null=True, blank=True)
    risk_level = models.CharField(max_length=30, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField()
    updated_at = models.DateTimeField()

    class Meta:
        verbose_name = _("Payment")
        verbose_name_plural = _("Payments")
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(fields=["rental", "attempt"], name="payment_unique_attempt"),
            models.CheckConstraint(
                condition=models.Q(amount__gt=Decimal("0.00")),
                name="payment_positive_amount",
            ),
        ]
        indexes = [
            models.Index(fields=["status", "failed_at"], name="payment_status_failed_idx"),
        ]

    def __str__(self) -> str:
        return f"Payment {self.pk} for rental {self.rental_id} ({self.status})"


class SecurityDeposit(models.Model):
    """Escrowed security deposit of a rental."""

    class Status(models.TextChoices):
        NONE = "none", _("None")
        HELD = "held", _("Held")
        CHARGED = "charged", _("Charged")
        RELEASED = "released", _("Released")

    class Action(models.TextChoices):
        CHARGE = "charge", _("Charge")
        RELEASE = "release", _("Release")

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    rental = models.OneToOneField(
        "rentals.Rental",
        on_delete=models.PROTECT,
        related_name="security_deposit",
    )
    payment = models.ForeignKey(
        Payment,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="deposits",
    )
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.NONE)
    currency = models.CharField(max_length=3)
    held_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    charged_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    provider_hold_ref = models.CharField(max_length=255, blank=True)
    pending_action = models.CharField(max_length=20, choices=Action.choices, blank=True)
    pending_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    held_at = models.DateTimeField(null=True, blank=True)
    settled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField()
    updated_at = models.DateTimeField()

    class Meta:
        verbose_name = _("Security deposit")
        verbose_name_plural = _("Security deposits")
        constraints = [
            models.CheckConstraint(
                condition=models.Q(charged_amount__lte=models.F("held_amount")),
                name="deposit_charge_within_hold",
            ),
        ]

    def __str__(self) -> str:
        return f"Deposit for rental {self.rental_id} ({self.status})"


class LedgerEntry(models.Model):
    """Append-only record of a money movement with the provider."""

    class Kind(models.TextChoices):
        CHARGE = "charge", _("Rental charge")
        REFUND = "refund", _("Refund")
        DEPOSIT_HOLD = "deposit_hold", _("Deposit hold")
        DEPOSIT_CHARGE = "deposit_charge", _("Deposit charge")
        DEPOSIT_RELEASE = "deposit_release", _("Deposit release")
        PAYOUT = "payout", _("Owner payout")

    class Status(models.TextChoices):
        PENDING = "pending", _("Pending")
        SUCCEEDED = "succeeded", _("Succeeded")
        FAILED = "failed", _("Failed")

    rental = models.ForeignKey(
        "rentals.Rental",
        on_delete=models.PROTECT,
        related_name="ledger_entries",
    )
    payment = models.ForeignKey(
        Payment,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="ledger_entries",
    )
    kind = models.CharField(max_length=20, choices=Kind.choices)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3)
    idempotency_key = models.CharField(max_length=255, unique=True)
    provider_reference = models.CharField(max_length=255, blank=True)
    error = models.CharField(max_length=500, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = _("Ledger entry")
        verbose_name_plural = _("Ledger entries")
        ordering = ["created_at"]
        indexes = [
            models.Index(fields=["payment", "kind", "status"], name="ledger_payment_kind_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.kind} {self.amount} {self.currency} ({self.status})"


class ProcessedNotification(models.Model):
    """Provider notification already applied; the unique event id enforces at-most-once."""

    event_id = models.CharField(max_length=255, unique=True)
    event_type = models.CharField(max_length=100)
    provider_intent_id = models.CharField(max_length=255, blank=True)
    outcome = models.CharField(max_length=50, blank=True)
    processed_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        verbose_name = _("Processed notification")
        verbose_name_plural = _("Processed notifications")
        ordering = ["-processed_at"]

    def __str__(self) -> str:
        return f"{self.event_type} {self.event_id}"


class PayoutAccount(models.Model):
    """Provider destination account that receives an owner's payouts."""

    owner = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="payout_account",
    )
    provider_account_id = models.CharField(max_length=255)
    payouts_enabled = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = _("Payout account")
        verbose_name_plural = _("Payout accounts")

    def __str__(self) -> str:
        return f"{self.owner_id} -> {self.provider_account_id}"
