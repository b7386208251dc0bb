"""Serializers for items and their availability calendar."""

from __future__ import annotations

from rest_framework import serializers  # type: ignore

from apps.items.domain.availability import Recurrence
from shared.domain.exceptions import InvalidInterval
from shared.domain.value_objects import Interval

from .models import Item


class ItemSerializer(serializers.ModelSerializer):
    owner_id = serializers.ReadOnlyField(source="owner.id")

    class Meta:
        model = Item
        fields = [
            "id",
            "owner_id",
            "title",
            "description",
            "category",
            "hourly_rate",
            "daily_rate",
            "weekly_rate",
            "security_deposit",
            "currency",
            "is_available",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "owner_id", "created_at", "updated_at"]

    def validate_currency(self, value: str) -> str:
        value = value.upper()
        if len(value) != 3 or not value.isalpha():
            raise serializers.ValidationError("Currency must be a 3-letter ISO code.")
        return value

    def validate(self, attrs):  # type: ignore
        rates = [attrs.get(name, getattr(self.instance, name, None)) for name in ("hourly_rate", "daily_rate", "weekly_rate")]
        if all(rate is None for rate in rates):
            raise serializers.ValidationError("At least one of hourly, daily or weekly rate is required.")
        return attrs


class IntervalSerializer(serializers.Serializer):
    """Half-open ``[start, end)`` period in aware datetimes."""

    start = serializers.DateTimeField()
    end = serializers.DateTimeField()

    def to_interval(self) -> Interval:
        try:
            return Interval(self.validated_data["start"], self.validated_data["end"])
        except ValueError as exc:
            raise InvalidInterval(str(exc)) from exc


class AvailabilityWindowCreateSerializer(IntervalSerializer):
    note = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")


class RecurringWindowSerializer(AvailabilityWindowCreateSerializer):
    """First occurrence plus how it repeats; ``until`` bounds the last start."""

    frequency = serializers.ChoiceField(choices=[recurrence.value for recurrence in Recurrence])
    every = serializers.IntegerField(min_value=1, max_value=365, default=1)
    until = serializers.DateTimeField()

    def to_recurrence(self) -> Recurrence:
        return Recurrence(self.validated_data["frequency"])


def window_to_dict(window) -> dict:
    return {
        "id": window.window_id,
        "start": window.interval.start.isoformat(),
        "end": window.interval.end.isoformat(),
        "note": window.note,
    }


def booking_to_dict(booking) -> dict:
    return {
        "rental_id": str(booking.rental_id),
        "start": booking.interval.start.isoformat(),
        "end": booking.interval.end.isoformat(),
        "status": booking.status,
    }
