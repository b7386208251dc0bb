"""
Transactional datastore access

Every mutating operation in the service layer runs through
``Datastore.run``: the operation receives an open unit of work, commits
atomically when it returns and is retried with exponential backoff when
the database reports a transient failure (lost connection, lock timeout,
serialization failure). Domain errors are never retried.
"""

from dataclasses import dataclass
from typing import Callable, Optional, TypeVar
import logging
import random
import time

from django.db import (  # type: ignore
    InterfaceError,
    OperationalError,
    close_old_connections,
    connections,
    transaction,
)

from shared.application.message_bus import MessageBus
from shared.application.uow import DjangoUnitOfWork
from shared.domain.exceptions import InfrastructureError

logger = logging.getLogger(__name__)

T = TypeVar('T')

TRANSIENT_ERRORS = (OperationalError, InterfaceError)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with jitter."""

    attempts: int = 3
    base_delay: float = 0.05
    max_delay: float = 1.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return delay * (0.5 + random.random() / 2)

    @classmethod
    def from_settings(cls) -> 'RetryPolicy':
        from django.conf import settings  # type: ignore

        return cls(
            attempts=max(1, int(getattr(settings, 'DATASTORE_RETRY_ATTEMPTS', 3))),
            base_delay=float(getattr(settings, 'DATASTORE_RETRY_BASE_DELAY', 0.05)),
            max_delay=float(getattr(settings, 'DATASTORE_RETRY_MAX_DELAY', 1.0)),
        )


class Datastore:
    """
    Runs operations inside a transaction with bounded retries

    Usage:
        def _approve(uow):
            rental = rentals.get(rental_id, lock=True)
            rental.approve(actor_id)
            uow.collect_events(rental)
            rentals.save(rental)
            return rental

        rental = datastore.run(_approve, name='rental.approve')
    """

    def __init__(
        self,
        bus: Optional[MessageBus] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.bus = bus
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    def run(self, operation: Callable[[DjangoUnitOfWork], T], name: str = '') -> T:
        label = name or getattr(operation, '__name__', 'operation')
        policy = self.retry_policy
        attempt = 0

        while True:
            attempt += 1
            try:
                with DjangoUnitOfWork(self.bus) as uow:
                    return operation(uow)
            except TRANSIENT_ERRORS as exc:
                # Inside an outer atomic block the whole outer transaction is
                # broken; retrying here would run against a dead transaction.
                if transaction.get_connection().in_atomic_block:
                    logger.error("Datastore failure inside outer transaction for %s: %s", label, exc)
                    raise InfrastructureError(f"Datastore failure during {label}") from exc

                if attempt >= policy.attempts:
                    logger.error(
                        "Datastore operation %s failed after %d attempts: %s",
                        label, attempt, exc,
                    )
                    raise InfrastructureError(f"Datastore failure during {label}") from exc

                delay = policy.delay_for(attempt)
                logger.warning(
                    "Transient datastore error in %s (attempt %d/%d), retrying in %.3fs: %s",
                    label, attempt, policy.attempts, delay, exc,
                )
                close_old_connections()
                self._sleep(delay)

    def close(self):
        """Release every database connection held by this thread."""
        connections.close_all()
