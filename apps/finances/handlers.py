"""Payment and deposit event handlers (post-commit logging for downstream consumers)."""

import logging

from apps.finances.domain.events import (
    DepositCharged,
    DepositHeld,
    DepositReleased,
    PaymentCompleted,
    PaymentFailed,
    PaymentOrphaned,
    PaymentRefunded,
)
from shared.application.message_bus import MessageBus

logger = logging.getLogger(__name__)


def log_payment_completed(event: PaymentCompleted):
    logger.info("Payment %s completed for rental %s: %s (%s)",
                event.payment_id, event.rental_id, event.amount, event.provider_intent_id)


def log_payment_failed(event: PaymentFailed):
    logger.warning("Payment %s for rental %s failed: %s %s",
                   event.payment_id, event.rental_id, event.failure_code, event.failure_message)


def alert_orphaned_payment(event: PaymentOrphaned):
    # Staff follow-up: the money is refunded by settlement or manually
    logger.error("Orphaned payment %s of %s for rental %s in status %s",
                 event.payment_id, event.amount, event.rental_id, event.rental_status)


def log_payment_refunded(event: PaymentRefunded):
    logger.info("Payment %s refunded %s (full: %s, ref %s)",
                event.payment_id, event.amount, event.fully_refunded, event.provider_reference)


def log_deposit_held(event: DepositHeld):
    logger.info("Deposit %s held for rental %s", event.amount, event.rental_id)


def log_deposit_charged(event: DepositCharged):
    logger.info("Deposit of rental %s charged %s, returned %s", event.rental_id, event.charged, event.returned)


def log_deposit_released(event: DepositReleased):
    logger.info("Deposit %s released for rental %s", event.amount, event.rental_id)


def register_payment_handlers(bus: MessageBus):
    bus.register_event_handler(PaymentCompleted, log_payment_completed)
    bus.register_event_handler(PaymentFailed, log_payment_failed)
    bus.register_event_handler(PaymentOrphaned, alert_orphaned_payment)
    bus.register_event_handler(PaymentRefunded, log_payment_refunded)
    bus.register_event_handler(DepositHeld, log_deposit_held)
    bus.register_event_handler(DepositCharged, log_deposit_charged)
    bus.register_event_handler(DepositReleased, log_deposit_released)
