import os

from celery import Celery
from celery.schedules import crontab  # type: ignore

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.dev")

app = Celery("rental_marketplace")

app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()


# ============================================================================
# CELERY BEAT SCHEDULE (Periodic Tasks)
# ============================================================================

app.conf.beat_schedule = {
    # Cancel pending / payment-failed rentals past their hold timeout
    "expire-stale-rentals": {
        "task": "rentals.expire_stale_rentals",
        "schedule": 60.0,
        "options": {"expires": 50},
    },
    # Finish refunds/deposit releases for cancelled paid rentals
    "settle-cancelled-rentals": {
        "task": "rentals.settle_cancelled_rentals",
        "schedule": crontab(minute="*/10"),
    },
    # Return captures that landed on a replaced payment attempt
    "refund-superseded-payments": {
        "task": "finances.refund_superseded_payments",
        "schedule": crontab(minute="5-59/10"),
    },
    # Alert on bursts of failed payments
    "monitor-failed-payments": {
        "task": "finances.monitor_failed_payments",
        "schedule": crontab(minute=5),
    },
    # Drop old webhook dedup records
    "purge-processed-notifications": {
        "task": "finances.purge_processed_notifications",
        "schedule": crontab(minute=30, hour=3),
    },
}

app.conf.timezone = "UTC"
