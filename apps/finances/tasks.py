"""Celery tasks for the finance domain."""

from __future__ import annotations

import logging

from celery import shared_task  # type: ignore

from shared.application.bootstrap import get_services

logger = logging.getLogger(__name__)


@shared_task(name="finances.monitor_failed_payments")
def monitor_failed_payments() -> dict:
    """Hourly count of failed payments; logs an alert past the threshold."""
    return get_services().payments.monitor_failed_payments()


@shared_task(name="finances.purge_processed_notifications")
def purge_processed_notifications() -> dict:
    """Daily retention of the webhook dedup records."""
    return get_services().payments.purge_processed_notifications()


@shared_task(name="finances.refund_superseded_payments")
def refund_superseded_payments() -> dict:
    """Full refunds of captures that landed on an attempt a retry replaced."""
    return get_services().payments.refund_superseded_payments()
