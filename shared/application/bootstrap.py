"""
Composition root

Wires repositories, the datastore, the payment gateway and the use cases
together once per process. Views and Celery tasks obtain everything from
``get_services()``; tests build their own graph with ``bootstrap()`` (for
example with a fake gateway) or reset the cached one.
"""

from dataclasses import dataclass
from typing import Optional
import logging
import threading

from django.conf import settings  # type: ignore

from apps.finances.application.escrow import SecurityDepositEscrow
from apps.finances.application.lifecycle import PaymentLifecycleManager
from apps.finances.application.payouts import OwnerPayouts
from apps.finances.application.settlement import CancellationSettlement
from apps.finances.gateway import PaymentGateway, load_gateway
from apps.finances.handlers import register_payment_handlers
from apps.finances.repositories import DepositRepository, PaymentRepository
from apps.finances.webhooks import WebhookIngress
from apps.items.services import AvailabilityService
from apps.rentals.application.command_handlers import (
    CancelRentalHandler,
    CompleteRentalHandler,
    CreateRentalHandler,
    DecideRentalHandler,
    ExpireRentalHandler,
)
from apps.rentals.handlers import register_rental_handlers
from apps.rentals.repositories import DjangoRentalRepository
from shared.application.message_bus import MessageBus
from shared.infrastructure.datastore import Datastore, RetryPolicy
from shared.infrastructure.locks import KeyedLock

logger = logging.getLogger(__name__)


@dataclass
class Services:
    bus: MessageBus
    datastore: Datastore
    locks: KeyedLock
    gateway: PaymentGateway
    availability: AvailabilityService
    create_rental: CreateRentalHandler
    decide_rental: DecideRentalHandler
    cancel_rental: CancelRentalHandler
    complete_rental: CompleteRentalHandler
    expire_rental: ExpireRentalHandler
    payments: PaymentLifecycleManager
    escrow: SecurityDepositEscrow
    settlement: CancellationSettlement
    payouts: OwnerPayouts
    webhooks: WebhookIngress

    def close(self):
        self.datastore.close()


def bootstrap(gateway: Optional[PaymentGateway] = None, bus: Optional[MessageBus] = None) -> Services:
    if bus is None:
        bus = MessageBus()
        register_rental_handlers(bus)
        register_payment_handlers(bus)

    datastore = Datastore(bus=bus, retry_policy=RetryPolicy.from_settings())
    locks = KeyedLock()
    gateway = gateway or load_gateway()

    rentals = DjangoRentalRepository()
    payments_repo = PaymentRepository()
    deposits = DepositRepository()
    availability = AvailabilityService(datastore, locks)

    payments = PaymentLifecycleManager(
        datastore,
        gateway,
        availability,
        rentals=rentals,
        payments=payments_repo,
        deposits=deposits,
        max_attempts=settings.RENTAL_MAX_PAYMENT_ATTEMPTS,
        failed_alert_threshold=settings.FAILED_PAYMENT_ALERT_THRESHOLD,
        failed_window_hours=settings.FAILED_PAYMENT_WINDOW_HOURS,
        notification_retention_days=settings.PROCESSED_NOTIFICATION_RETENTION_DAYS,
    )
    escrow = SecurityDepositEscrow(datastore, gateway, deposits=deposits, payments=payments_repo, rentals=rentals)
    settlement = CancellationSettlement(
        datastore, payments, escrow, rentals=rentals, payments=payments_repo, deposits=deposits,
    )

    return Services(
        bus=bus,
        datastore=datastore,
        locks=locks,
        gateway=gateway,
        availability=availability,
        create_rental=CreateRentalHandler(datastore, availability, rentals),
        decide_rental=DecideRentalHandler(datastore, rentals),
        cancel_rental=CancelRentalHandler(datastore, rentals, payments_repo, gateway, settlement.settle),
        complete_rental=CompleteRentalHandler(
            datastore,
            availability,
            rentals,
            payments_repo,
            deposits,
            fee_rate=settings.RENTAL_PLATFORM_FEE_RATE,
            fee_rates=settings.RENTAL_PLATFORM_FEE_RATES,
        ),
        expire_rental=ExpireRentalHandler(datastore, rentals, payments_repo, gateway),
        payments=payments,
        escrow=escrow,
        settlement=settlement,
        payouts=OwnerPayouts(datastore, gateway, rentals=rentals, payments=payments_repo),
        webhooks=WebhookIngress(
            payments,
            settlement,
            secret=settings.PAYMENT_WEBHOOK_SECRET,
            tolerance=settings.PAYMENT_WEBHOOK_TOLERANCE_SECONDS,
        ),
    )


_services: Optional[Services] = None
_services_lock = threading.Lock()


def get_services() -> Services:
    global _services
    if _services is None:
        with _services_lock:
            if _services is None:
                _services = bootstrap()
                logger.debug("Services bootstrapped")
    return _services


def reset_services(services: Optional[Services] = None):
    """Replace (or drop) the process-wide services, used by tests."""
    global _services
    with _services_lock:
        _services = services
