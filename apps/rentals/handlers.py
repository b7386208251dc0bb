"""
Rental event handlers

Run after commit. Delivery to renters and owners (email, push) is done by
an external notification service that consumes these log records.
"""

import logging

from apps.rentals.domain.events import (
    RentalApproved,
    RentalCancelled,
    RentalCompleted,
    RentalPaymentFailed,
    RentalRejected,
    RentalRequested,
)
from shared.application.message_bus import MessageBus

logger = logging.getLogger(__name__)


def notify_owner_of_request(event: RentalRequested):
    logger.info(
        "Rental %s requested: item %s by renter %s for %s (%s); notify owner %s",
        event.rental_id, event.item_id, event.renter_id, event.period, event.total, event.owner_id,
    )


def notify_renter_of_approval(event: RentalApproved):
    source = "payment" if event.by_payment else "owner"
    logger.info("Rental %s approved by %s; notify renter %s", event.rental_id, source, event.renter_id)


def notify_renter_of_rejection(event: RentalRejected):
    logger.info("Rental %s rejected (%s); notify renter %s", event.rental_id, event.reason or "no reason", event.renter_id)


def notify_parties_of_cancellation(event: RentalCancelled):
    logger.info(
        "Rental %s cancelled by %s from %s (settlement required: %s)",
        event.rental_id, event.cancelled_by, event.old_status, event.requires_settlement,
    )


def notify_owner_of_completion(event: RentalCompleted):
    logger.info(
        "Rental %s completed; owner %s payout %s, platform fee %s",
        event.rental_id, event.owner_id, event.owner_payout, event.platform_fee,
    )


def notify_renter_of_payment_failure(event: RentalPaymentFailed):
    logger.info("Payment for rental %s failed after %d attempt(s); notify renter %s",
                event.rental_id, event.attempts, event.renter_id)


def register_rental_handlers(bus: MessageBus):
    bus.register_event_handler(RentalRequested, notify_owner_of_request)
    bus.register_event_handler(RentalApproved, notify_renter_of_approval)
    bus.register_event_handler(RentalRejected, notify_renter_of_rejection)
    bus.register_event_handler(RentalCancelled, notify_parties_of_cancellation)
    bus.register_event_handler(RentalCompleted, notify_owner_of_completion)
    bus.register_event_handler(RentalPaymentFailed, notify_renter_of_payment_failure)
