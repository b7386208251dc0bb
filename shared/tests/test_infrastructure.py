"""Tests for the datastore, unit of work, message bus, keyed locks and API error rendering."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass

from django.contrib.auth import get_user_model
from django.db import IntegrityError, OperationalError, transaction
from django.test import SimpleTestCase, TestCase, TransactionTestCase
from rest_framework.test import APIRequestFactory

from shared.application.message_bus import MessageBus
from shared.application.uow import DjangoUnitOfWork
from shared.domain.base import Aggregate, DomainEvent
from shared.domain.exceptions import (
    InfrastructureError,
    IntervalConflict,
    NotFound,
    ValidationFailed,
)
from shared.infrastructure.api import domain_exception_handler
from shared.infrastructure.datastore import Datastore, RetryPolicy
from shared.infrastructure.locks import KeyedLock

User = get_user_model()


@dataclass(kw_only=True)
class SomethingHappened(DomainEvent):
    what: str = ""


@dataclass(eq=False)
class Thing(Aggregate):
    pass


class FlakyOperation:
    """Raises ``failures`` transient errors before succeeding."""

    def __init__(self, failures: int, error: Exception | None = None):
        self.failures = failures
        self.error = error or OperationalError("database is locked")
        self.calls = 0

    def __call__(self, uow):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "done"


class DatastoreRetryTests(TransactionTestCase):

    def setUp(self) -> None:
        self.delays: list[float] = []
        self.datastore = Datastore(
            retry_policy=RetryPolicy(attempts=3, base_delay=0.1, max_delay=0.15),
            sleep=self.delays.append,
        )

    def test_transient_error_is_retried(self) -> None:
        operation = FlakyOperation(failures=2)

        self.assertEqual(self.datastore.run(operation, name="flaky"), "done")
        self.assertEqual(operation.calls, 3)
        self.assertEqual(len(self.delays), 2)
        self.assertTrue(all(0.05 <= delay <= 0.15 for delay in self.delays))

    def test_exhausted_retries_raise_infrastructure_error(self) -> None:
        operation = FlakyOperation(failures=5)

        with self.assertRaises(InfrastructureError):
            self.datastore.run(operation, name="flaky")
        self.assertEqual(operation.calls, 3)

    def test_integrity_error_is_not_retried(self) -> None:
        operation = FlakyOperation(failures=1, error=IntegrityError("duplicate key"))

        with self.assertRaises(IntegrityError):
            self.datastore.run(operation)
        self.assertEqual(operation.calls, 1)

    def test_domain_error_is_not_retried(self) -> None:
        operation = FlakyOperation(failures=1, error=NotFound())

        with self.assertRaises(NotFound):
            self.datastore.run(operation)
        self.assertEqual(operation.calls, 1)

    def test_failure_inside_outer_transaction_is_not_retried(self) -> None:
        operation = FlakyOperation(failures=1)

        with self.assertRaises(InfrastructureError):
            with transaction.atomic():
                self.datastore.run(operation)
        self.assertEqual(operation.calls, 1)
        self.assertEqual(self.delays, [])

    def test_work_is_rolled_back_on_error(self) -> None:
        def create_then_fail(uow):
            User.objects.create_user(username="ghost", password="x")
            raise ValidationFailed("nope")

        with self.assertRaises(ValidationFailed):
            self.datastore.run(create_then_fail)
        self.assertFalse(User.objects.filter(username="ghost").exists())

    def test_retry_delay_grows_and_is_capped(self) -> None:
        policy = RetryPolicy(attempts=5, base_delay=0.1, max_delay=0.3)

        self.assertLessEqual(policy.delay_for(1), 0.1)
        self.assertGreaterEqual(policy.delay_for(2), 0.1)
        self.assertLessEqual(policy.delay_for(10), 0.3)


class UnitOfWorkTests(TestCase):

    def test_events_are_published_only_after_commit(self) -> None:
        received = []
        bus = MessageBus()
        bus.register_event_handler(SomethingHappened, received.append)
        thing = Thing()
        thing.add_event(SomethingHappened(what="created"))

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            with DjangoUnitOfWork(bus) as uow:
                uow.collect_events(thing)
            self.assertEqual(received, [])

        self.assertEqual(len(callbacks), 1)
        self.assertEqual([event.what for event in received], ["created"])
        self.assertEqual(received[0].aggregate_id, thing.id)
        self.assertEqual(thing.events, [])

    def test_rollback_discards_events(self) -> None:
        received = []
        bus = MessageBus()
        bus.register_event_handler(SomethingHappened, received.append)
        thing = Thing()
        thing.add_event(SomethingHappened(what="lost"))

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            with self.assertRaises(ValueError):
                with DjangoUnitOfWork(bus) as uow:
                    uow.collect_events(thing)
                    raise ValueError("boom")

        self.assertEqual(callbacks, [])
        self.assertEqual(received, [])


class MessageBusTests(SimpleTestCase):

    def test_failing_handler_does_not_stop_the_others(self) -> None:
        received = []

        def broken(event):
            raise RuntimeError("handler bug")

        bus = MessageBus()
        bus.register_event_handler(SomethingHappened, broken)
        bus.register_event_handler(SomethingHappened, received.append)

        with self.assertLogs("shared.application.message_bus", level="ERROR"):
            bus.publish_events([SomethingHappened(what="a"), SomethingHappened(what="b")])

        self.assertEqual([event.what for event in received], ["a", "b"])

    def test_events_without_handlers_are_skipped(self) -> None:
        MessageBus().publish_events([SomethingHappened()])


class KeyedLockTests(SimpleTestCase):

    def test_same_key_is_serialized(self) -> None:
        locks = KeyedLock()
        active, peak = [0], [0]
        guard = threading.Lock()

        def work():
            with locks.hold(("item", 1)):
                with guard:
                    active[0] += 1
                    peak[0] = max(peak[0], active[0])
                time.sleep(0.01)
                with guard:
                    active[0] -= 1

        threads = [threading.Thread(target=work) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(peak[0], 1)
        self.assertEqual(len(locks), 0)

    def test_different_keys_do_not_block(self) -> None:
        locks = KeyedLock()
        entered = threading.Event()

        def other():
            with locks.hold(("item", 2)):
                entered.set()

        with locks.hold(("item", 1)):
            thread = threading.Thread(target=other)
            thread.start()
            self.assertTrue(entered.wait(timeout=5))
            thread.join()


class DomainExceptionHandlerTests(SimpleTestCase):

    def setUp(self) -> None:
        self.context = {"view": None, "request": APIRequestFactory().get("/")}

    def test_domain_error_carries_code_and_details(self) -> None:
        error = IntervalConflict(conflicting_bookings=["r1"], conflicting_windows=[4])

        response = domain_exception_handler(error, self.context)

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data, {
            "detail": "The requested period is not available.",
            "code": "interval_conflict",
            "conflicting_bookings": ["r1"],
            "conflicting_windows": [4],
        })

    def test_infrastructure_error_is_a_server_error(self) -> None:
        with self.assertLogs("shared.infrastructure.api", level="ERROR"):
            response = domain_exception_handler(InfrastructureError(), self.context)

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data["code"], "internal_error")

    def test_other_exceptions_fall_through(self) -> None:
        self.assertIsNone(domain_exception_handler(KeyError("x"), self.context))
