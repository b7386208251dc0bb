"""Admin registration for the finance domain.

Money records are read-only here; refunds, deposit settlement and payouts
go through the API so they use the provider idempotency keys.
"""

from __future__ import annotations

from django.contrib import admin

from .models import LedgerEntry, Payment, PayoutAccount, ProcessedNotification, SecurityDeposit


class ReadOnlyAdmin(admin.ModelAdmin):

    def has_add_permission(self, request):  # type: ignore
        return False

    def has_change_permission(self, request, obj=None):  # type: ignore
        return False

    def has_delete_permission(self, request, obj=None):  # type: ignore
        return False


@admin.register(Payment)
class PaymentAdmin(ReadOnlyAdmin):
    list_display = ("id", "rental", "attempt", "status", "amount", "deposit_amount", "currency", "risk_level", "paid_at")
    list_filter = ("status", "currency", "risk_level")
    search_fields = ("id", "provider_intent_id", "rental__id")


@admin.register(SecurityDeposit)
class SecurityDepositAdmin(ReadOnlyAdmin):
    list_display = ("rental", "status", "held_amount", "charged_amount", "currency", "pending_action", "settled_at")
    list_filter = ("status", "pending_action")


@admin.register(LedgerEntry)
class LedgerEntryAdmin(ReadOnlyAdmin):
    list_display = ("idempotency_key", "kind", "status", "amount", "currency", "provider_reference", "created_at")
    list_filter = ("kind", "status")
    search_fields = ("idempotency_key", "provider_reference")


@admin.register(ProcessedNotification)
class ProcessedNotificationAdmin(ReadOnlyAdmin):
    list_display = ("event_id", "event_type", "provider_intent_id", "outcome", "processed_at")
    list_filter = ("event_type", "outcome")
    search_fields = ("event_id", "provider_intent_id")


@admin.register(PayoutAccount)
class PayoutAccountAdmin(admin.ModelAdmin):
    list_display = ("owner", "provider_account_id", "payouts_enabled", "updated_at")
    search_fields = ("owner__username", "provider_account_id")
