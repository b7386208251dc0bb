"""
Unit of work

One database transaction per command. Events collected from aggregates
are handed to the message bus through ``transaction.on_commit`` so a
rolled-back command never notifies anyone.
"""

from abc import ABC, abstractmethod
from typing import List, Optional
import logging

from django.db import transaction  # type: ignore

from shared.application.message_bus import MessageBus
from shared.domain.base import DomainEvent

logger = logging.getLogger(__name__)


class AbstractUnitOfWork(ABC):
    """Context manager: commit on success, roll back on error."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.commit()
        else:
            self.rollback()

    @abstractmethod
    def commit(self):
        """Commit the transaction"""

    @abstractmethod
    def rollback(self):
        """Rollback the transaction"""

    @abstractmethod
    def collect_events(self, aggregate):
        """Collect events from aggregate root"""


class DjangoUnitOfWork(AbstractUnitOfWork):
    """
    Wraps ``transaction.atomic``. Usually entered by ``Datastore.run``,
    which adds retries for transient database errors.

    Usage:
        with DjangoUnitOfWork(bus) as uow:
            rental = rentals.get(rental_id, lock=True)
            rental.approve(actor_id)
            uow.collect_events(rental)
            rentals.save(rental)
        # Events are published after commit
    """

    def __init__(self, bus: Optional[MessageBus] = None):
        self._bus = bus
        self._events: List[DomainEvent] = []
        self._transaction = None

    def __enter__(self):
        """Start database transaction"""
        self._transaction = transaction.atomic()
        self._transaction.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Complete or rollback transaction"""
        try:
            if exc_type is None:
                self.commit()
            else:
                self.rollback()
        finally:
            if self._transaction:
                self._transaction.__exit__(exc_type, exc_val, exc_tb)

    def commit(self):
        """
        Schedule event publishing

        Events are published using Django's transaction.on_commit()
        so they are only sent after the database commit succeeds.
        """
        events = self._events.copy()
        self._events.clear()

        if events and self._bus is not None:
            logger.debug("Committing transaction with %d events", len(events))
            transaction.on_commit(lambda: self._publish_events(events))

    def rollback(self):
        """Rollback changes and discard events"""
        if self._events:
            logger.info("Rolling back transaction, discarding %d events", len(self._events))
        self._events.clear()

    def collect_events(self, aggregate):
        """
        Collect events from aggregate root

        Extracts all domain events from the aggregate and
        clears them from the aggregate.
        """
        new_events = aggregate.events
        if new_events:
            self._events.extend(new_events)
            aggregate.clear_events()
            logger.debug(
                "Collected %d events from %s (ID: %s)",
                len(new_events), aggregate.__class__.__name__, aggregate.id,
            )

    def _publish_events(self, events: List[DomainEvent]):
        logger.info("Publishing %d domain events after commit", len(events))
        try:
            self._bus.publish_events(events)
        except Exception:
            # The transaction is already committed; handler failures are
            # reported, never propagated back into the caller.
            logger.exception("Error publishing events")
