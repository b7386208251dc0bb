"""Serializers for the rental domain."""

from __future__ import annotations

from rest_framework import serializers  # type: ignore

from .models import Rental


class RentalCreateSerializer(serializers.Serializer):
    """Rental request by the renter; availability is decided by the service layer."""

    item = serializers.IntegerField(min_value=1)
    start_date = serializers.DateTimeField()
    end_date = serializers.DateTimeField()
    rental_type = serializers.ChoiceField(choices=Rental.RentalType.choices, default=Rental.RentalType.DAILY)


class RentalSerializer(serializers.ModelSerializer):
    item_id = serializers.ReadOnlyField(source="item.id")
    renter_id = serializers.ReadOnlyField(source="renter.id")
    owner_id = serializers.ReadOnlyField(source="item.owner_id")

    class Meta:
        model = Rental
        fields = [
            "id",
            "item_id",
            "renter_id",
            "owner_id",
            "rental_type",
            "start",
            "end",
            "status",
            "total_amount",
            "currency",
            "payment_attempts",
            "platform_fee",
            "owner_payout",
            "settlement_status",
            "reason",
            "decided_at",
            "cancelled_at",
            "completed_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class DecisionSerializer(serializers.Serializer):
    decision = serializers.ChoiceField(choices=["approve", "reject"])
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class CancelSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")
