"""
Provider Notifications

Inbound webhook payloads are parsed once, at the edge, into a closed set
of notification kinds. Anything the service does not understand becomes
``UnknownNotification`` and is acknowledged without side effects, so new
provider event types never reach the reconciliation logic half-parsed.

Envelope (Stripe event format):
    {"id": "evt_...", "type": "payment_intent.succeeded", "created": 1700000000,
     "data": {"object": {...}}}
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

from shared.domain.exceptions import ValidationFailed
from shared.domain.value_objects import Money


class MalformedNotification(ValidationFailed):
    code = 'malformed_notification'
    default_message = 'Invalid JSON'


@dataclass(frozen=True)
class NotificationBase:
    event_id: str
    event_type: str
    created: Optional[datetime] = None
    intent_id: str = ''
    metadata: Mapping[str, str] = field(default_factory=dict)

    @property
    def payment_ref(self) -> str:
        """Local payment id the intent was created with, if the provider echoes it."""
        return str(self.metadata.get('payment_id', '') or '')


@dataclass(frozen=True)
class PaymentSucceeded(NotificationBase):
    amount: Optional[Money] = None
    risk_score: Optional[int] = None
    risk_level: str = ''


@dataclass(frozen=True)
class PaymentFailedNotification(NotificationBase):
    failure_code: str = ''
    failure_message: str = ''


@dataclass(frozen=True)
class ChargeRefunded(NotificationBase):
    amount_refunded: Optional[Money] = None
    fully_refunded: bool = False


@dataclass(frozen=True)
class PaymentCanceled(NotificationBase):
    cancellation_reason: str = ''


@dataclass(frozen=True)
class UnknownNotification(NotificationBase):
    pass


ProviderNotification = Union[
    PaymentSucceeded,
    PaymentFailedNotification,
    ChargeRefunded,
    PaymentCanceled,
    UnknownNotification,
]


def _money(cents: Any, currency: Any) -> Optional[Money]:
    if cents is None or not currency:
        return None
    try:
        return Money.from_minor_units(int(cents), str(currency))
    except (TypeError, ValueError):
        return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _charge_outcome(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Risk outcome of the charge behind a payment intent."""
    latest = obj.get('latest_charge')
    if isinstance(latest, dict):
        return _as_dict(latest.get('outcome'))
    charges = _as_dict(obj.get('charges')).get('data') or []
    if charges and isinstance(charges[0], dict):
        return _as_dict(charges[0].get('outcome'))
    return {}


def _risk_score(outcome: Dict[str, Any]) -> Optional[int]:
    score = outcome.get('risk_score')
    try:
        return int(score) if score is not None else None
    except (TypeError, ValueError):
        return None


def _parse_succeeded(base: Dict[str, Any], obj: Dict[str, Any]) -> PaymentSucceeded:
    outcome = _charge_outcome(obj)
    return PaymentSucceeded(
        **base,
        amount=_money(obj.get('amount_received', obj.get('amount')), obj.get('currency')),
        risk_score=_risk_score(outcome),
        risk_level=str(outcome.get('risk_level') or ''),
    )


def _parse_failed(base: Dict[str, Any], obj: Dict[str, Any]) -> PaymentFailedNotification:
    error = _as_dict(obj.get('last_payment_error'))
    return PaymentFailedNotification(
        **base,
        failure_code=str(error.get('decline_code') or error.get('code') or 'unknown'),
        failure_message=str(error.get('message') or 'Payment failed'),
    )


def _parse_refunded(base: Dict[str, Any], obj: Dict[str, Any]) -> ChargeRefunded:
    return ChargeRefunded(
        **base,
        amount_refunded=_money(obj.get('amount_refunded'), obj.get('currency')),
        fully_refunded=bool(obj.get('refunded')),
    )


def _parse_canceled(base: Dict[str, Any], obj: Dict[str, Any]) -> PaymentCanceled:
    return PaymentCanceled(**base, cancellation_reason=str(obj.get('cancellation_reason') or ''))


PARSERS = {
    'payment_intent.succeeded': _parse_succeeded,
    'payment_intent.payment_failed': _parse_failed,
    'charge.refunded': _parse_refunded,
    'payment_intent.canceled': _parse_canceled,
}


def parse_notification(envelope: Any) -> ProviderNotification:
    """Turn a decoded webhook body into a typed notification."""
    if not isinstance(envelope, dict):
        raise MalformedNotification('Notification body must be a JSON object')

    event_id = envelope.get('id')
    event_type = envelope.get('type')
    if not event_id or not event_type:
        raise MalformedNotification('Notification is missing "id" or "type"')

    obj = _as_dict(_as_dict(envelope.get('data')).get('object'))
    created = envelope.get('created')
    try:
        created_at = datetime.fromtimestamp(int(created), tz=timezone.utc) if created is not None else None
    except (TypeError, ValueError, OverflowError):
        created_at = None

    # charge.* events carry the charge; its intent is a separate field
    if event_type.startswith('charge.'):
        intent_id = obj.get('payment_intent') or ''
    else:
        intent_id = obj.get('id') or ''

    base = {
        'event_id': str(event_id),
        'event_type': str(event_type),
        'created': created_at,
        'intent_id': str(intent_id),
        'metadata': {str(k): str(v) for k, v in _as_dict(obj.get('metadata')).items()},
    }

    parser = PARSERS.get(event_type)
    if parser is None:
        return UnknownNotification(**base)
    return parser(base, obj)
