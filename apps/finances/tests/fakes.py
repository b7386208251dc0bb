"""In-memory payment provider used by the test suite."""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections import defaultdict
from typing import Any, Dict, List, Mapping, Optional

from apps.finances.gateway import IntentResult, PaymentGateway, RefundResult, TransferResult
from shared.domain.value_objects import Money

WEBHOOK_SECRET = "whsec_test_secret"


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    """Stripe v1 scheme: HMAC-SHA256 over ``"<t>.<raw body>"``."""
    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


class FakePaymentGateway(PaymentGateway):
    """
    Records every call and answers like the provider would.

    A repeated idempotency key returns the first answer without creating a
    new object, the same way the real provider does. ``fail_next`` queues an
    exception for the next call of one method.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.intents: Dict[str, Dict[str, Any]] = {}
        self.refunds: List[RefundResult] = []
        self.transfers: List[TransferResult] = []
        self._by_key: Dict[str, Any] = {}
        self._failures: Dict[str, List[Exception]] = defaultdict(list)
        self._counter = 0

    def fail_next(self, method: str, error: Exception):
        self._failures[method].append(error)

    def calls_to(self, method: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == method]

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_fake_{self._counter}"

    def _enter(self, method: str, *args):
        self.calls.append((method, *args))
        if self._failures[method]:
            raise self._failures[method].pop(0)

    def create_intent(self, amount: Money, metadata: Mapping[str, str], idempotency_key: str) -> IntentResult:
        self._enter("create_intent", amount, dict(metadata), idempotency_key)
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        intent_id = self._next_id("pi")
        self.intents[intent_id] = {"amount": amount, "metadata": dict(metadata), "status": "requires_payment_method"}
        result = IntentResult(
            intent_id=intent_id,
            status="requires_payment_method",
            client_secret=f"{intent_id}_secret",
            amount=amount,
        )
        self._by_key[idempotency_key] = result
        return result

    def confirm_intent(self, intent_id: str, payment_method: str) -> IntentResult:
        self._enter("confirm_intent", intent_id, payment_method)
        self.intents[intent_id]["status"] = "succeeded"
        return IntentResult(intent_id=intent_id, status="succeeded", amount=self.intents[intent_id]["amount"])

    def capture_intent(self, intent_id: str, amount_to_capture: Optional[Money] = None) -> IntentResult:
        self._enter("capture_intent", intent_id, amount_to_capture)
        self.intents[intent_id]["status"] = "succeeded"
        return IntentResult(
            intent_id=intent_id,
            status="succeeded",
            amount=amount_to_capture or self.intents[intent_id]["amount"],
        )

    def cancel_intent(self, intent_id: str, idempotency_key: str) -> IntentResult:
        self._enter("cancel_intent", intent_id, idempotency_key)
        if intent_id in self.intents:
            self.intents[intent_id]["status"] = "canceled"
        return IntentResult(intent_id=intent_id, status="canceled")

    def refund(
        self,
        intent_id: str,
        amount: Money,
        idempotency_key: str,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> RefundResult:
        self._enter("refund", intent_id, amount, idempotency_key)
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        result = RefundResult(refund_id=self._next_id("re"), status="succeeded", amount=amount)
        self.refunds.append(result)
        self._by_key[idempotency_key] = result
        return result

    def create_transfer(
        self,
        amount: Money,
        destination: str,
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> TransferResult:
        self._enter("create_transfer", amount, destination, idempotency_key)
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        result = TransferResult(
            transfer_id=self._next_id("tr"),
            amount=amount,
            destination=destination,
            metadata=dict(metadata),
        )
        self.transfers.append(result)
        self._by_key[idempotency_key] = result
        return result


# ===== Webhook payloads =====

def intent_event(
    event_id: str,
    event_type: str,
    intent_id: str,
    amount_cents: int,
    currency: str = "usd",
    metadata: Optional[Mapping[str, str]] = None,
    **extra: Any,
) -> dict:
    obj = {
        "id": intent_id,
        "object": "payment_intent",
        "amount": amount_cents,
        "currency": currency,
        "metadata": dict(metadata or {}),
    }
    obj.update(extra)
    return {
        "id": event_id,
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    }


def refund_event(event_id: str, intent_id: str, amount_refunded_cents: int, refunded: bool, currency: str = "usd") -> dict:
    return {
        "id": event_id,
        "type": "charge.refunded",
        "created": int(time.time()),
        "data": {
            "object": {
                "id": f"ch_{event_id}",
                "object": "charge",
                "payment_intent": intent_id,
                "amount_refunded": amount_refunded_cents,
                "currency": currency,
                "refunded": refunded,
            }
        },
    }


def signed(envelope: dict, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None):
    """Raw body plus a matching signature header."""
    body = json.dumps(envelope).encode("utf-8")
    timestamp = int(time.time()) if timestamp is None else timestamp
    return body, f"t={timestamp},v1={compute_signature(body, timestamp, secret)}"
