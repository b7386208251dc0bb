"""Serializers for payments, deposits and payouts."""

from __future__ import annotations

from decimal import Decimal

from rest_framework import serializers  # type: ignore

from .models import LedgerEntry, Payment


class LedgerEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = LedgerEntry
        fields = ["kind", "status", "amount", "currency", "provider_reference", "created_at"]
        read_only_fields = fields


class PaymentSerializer(serializers.ModelSerializer):
    rental_id = serializers.ReadOnlyField(source="rental.id")
    ledger_entries = LedgerEntrySerializer(many=True, read_only=True)

    class Meta:
        model = Payment
        fields = [
            "id",
            "rental_id",
            "attempt",
            "provider_intent_id",
            "amount",
            "deposit_amount",
            "currency",
            "status",
            "refunded_amount",
            "failure_code",
            "failure_message",
            "risk_score",
            "risk_level",
            "paid_at",
            "failed_at",
            "refunded_at",
            "created_at",
            "ledger_entries",
        ]
        read_only_fields = fields


class RentalReferenceSerializer(serializers.Serializer):
    rental = serializers.UUIDField()


class AmountSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"))


def hold_to_dict(hold) -> dict:
    return {
        "payment_id": str(hold.payment_id),
        "rental_id": str(hold.rental_id),
        "client_secret": hold.client_secret,
        "amount": str(hold.amount.amount),
        "deposit_amount": str(hold.deposit.amount),
        "currency": hold.amount.currency,
    }


def deposit_to_dict(deposit) -> dict:
    return {
        "rental_id": str(deposit.rental_id),
        "status": deposit.status.value,
        "currency": deposit.currency,
        "held_amount": str(deposit.held.amount),
        "charged_amount": str(deposit.charged.amount),
        "returned_amount": str(deposit.returned.amount),
        "settlement_in_progress": deposit.pending_action is not None,
        "held_at": deposit.held_at.isoformat() if deposit.held_at else None,
        "settled_at": deposit.settled_at.isoformat() if deposit.settled_at else None,
    }


def payout_to_dict(payout) -> dict:
    return {
        "rental_id": str(payout.rental_id),
        "amount": str(payout.amount.amount),
        "currency": payout.amount.currency,
        "destination": payout.destination,
        "transfer_id": payout.transfer_id,
        "already_paid": payout.already_paid,
    }
