"""Admin registration for rentals."""

from __future__ import annotations

from django.contrib import admin

from .models import Rental


@admin.register(Rental)
class RentalAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "item",
        "renter",
        "rental_type",
        "start",
        "end",
        "status",
        "total_amount",
        "currency",
        "settlement_status",
        "created_at",
    )
    list_filter = ("status", "rental_type", "settlement_status")
    search_fields = ("id", "item__title", "renter__username", "renter__email")
    readonly_fields = (
        "id",
        "total_amount",
        "platform_fee",
        "owner_payout",
        "payment_attempts",
        "created_at",
        "updated_at",
    )
