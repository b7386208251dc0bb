"""Admin registration for items."""

from __future__ import annotations

from django.contrib import admin

from .models import AvailabilityWindow, Item


class AvailabilityWindowInline(admin.TabularInline):
    model = AvailabilityWindow
    extra = 0
    fields = ("start", "end", "note")


@admin.register(Item)
class ItemAdmin(admin.ModelAdmin):
    list_display = ("title", "owner", "category", "daily_rate", "security_deposit", "currency", "is_available")
    list_filter = ("category", "is_available", "currency")
    search_fields = ("title", "owner__username", "owner__email")
    inlines = [AvailabilityWindowInline]
