"""Celery tasks for the rental domain."""

from __future__ import annotations

import logging
from datetime import timedelta

from celery import shared_task  # type: ignore
from django.conf import settings  # type: ignore

from apps.rentals.application.command_handlers import ExpireRentalCommand
from shared.application.bootstrap import get_services
from shared.domain.base import utcnow
from shared.domain.exceptions import DomainError

logger = logging.getLogger(__name__)


# ============================================================================
# PERIODIC TASKS (Celery Beat)
# ============================================================================

@shared_task(name="rentals.expire_stale_rentals")
def expire_stale_rentals() -> dict[str, int]:
    """
    Cancel unpaid rentals that sat idle longer than the hold timeout.

    Runs every minute. Each rental goes through the same state-machine
    guard as a manual cancellation, so a rental that got paid in the
    meantime is left alone.

    Returns:
        dict: {"checked": candidates, "expired": rentals cancelled}
    """
    services = get_services()
    cutoff = utcnow() - timedelta(minutes=settings.RENTAL_HOLD_TIMEOUT_MINUTES)
    candidates = services.payments.rentals.stale_ids(cutoff)

    expired = 0
    for rental_id in candidates:
        try:
            if services.expire_rental.handle(ExpireRentalCommand(rental_id=rental_id)):
                expired += 1
        except DomainError as exc:
            logger.warning("Could not expire rental %s: %s", rental_id, exc.message)

    if expired:
        logger.info("Expired %d of %d stale rentals", expired, len(candidates))
    return {"checked": len(candidates), "expired": expired}


@shared_task(name="rentals.settle_cancelled_rentals")
def settle_cancelled_rentals() -> dict[str, int]:
    """
    Retry refunds and deposit releases still owed for cancelled rentals.

    Returns:
        dict: {"pending": rentals found, "settled": rentals now settled}
    """
    settlement = get_services().settlement
    pending = settlement.pending()

    settled = 0
    for rental_id in pending:
        if settlement.settle(rental_id):
            settled += 1

    if pending:
        logger.info("Settled %d of %d cancelled rentals", settled, len(pending))
    return {"pending": len(pending), "settled": settled}
