"""
Domain building blocks

- Entity: identity-based equality, created/updated timestamps
- ValueObject: frozen, compared by value
- Aggregate: an entity that records domain events until the unit of work collects them
- DomainEvent: a fact about an aggregate, published after commit
"""

from abc import ABC
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List
from uuid import UUID, uuid4


def utcnow() -> datetime:
    """Timezone-aware current time used by all aggregates."""
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class Entity(ABC):
    """Mutable object with an identity; equal when the ids are equal."""
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __eq__(self, other):
        if not isinstance(other, self.__class__):
            return False
        return self.id == other.id

    def __hash__(self):
        return hash(self.id)

    def touch(self):
        self.updated_at = utcnow()


@dataclass(frozen=True)
class ValueObject(ABC):
    pass


@dataclass(eq=False)
class Aggregate(Entity):
    """
    Consistency boundary.

    State changes append events here; ``DjangoUnitOfWork.collect_events``
    takes them and the message bus publishes them once the transaction
    has committed.
    """
    _events: List['DomainEvent'] = field(default_factory=list, repr=False, init=False)

    def add_event(self, event: 'DomainEvent'):
        if event.aggregate_id is None:
            event.aggregate_id = self.id
        self._events.append(event)

    def clear_events(self):
        self._events.clear()

    @property
    def events(self) -> List['DomainEvent']:
        """Snapshot of the pending events."""
        return self._events.copy()


@dataclass(kw_only=True)
class DomainEvent:
    event_id: UUID = field(default_factory=uuid4)
    occurred_at: datetime = field(default_factory=utcnow)
    aggregate_id: UUID | None = None
