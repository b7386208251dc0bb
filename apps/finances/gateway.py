"""Payment provider boundary.

The rest of the finances app talks to the provider only through
``PaymentGateway``. ``StripeGateway`` is the production implementation;
tests plug in an in-memory fake via ``PAYMENT_GATEWAY_CLASS``.

Every money-moving call takes an idempotency key so a retried call after
a crash or timeout never moves money twice.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping, Optional

import stripe
from django.conf import settings  # type: ignore
from django.utils.module_loading import import_string  # type: ignore

from shared.domain.exceptions import ProviderDeclined, ProviderError, ProviderUnavailable
from shared.domain.value_objects import Money

logger = logging.getLogger(__name__)

AUTOMATIC_PAYMENT_METHODS_CONFIG = {"enabled": True, "allow_redirects": "never"}


@dataclass(frozen=True)
class IntentResult:
    intent_id: str
    status: str
    client_secret: str = ""
    amount: Optional[Money] = None


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    status: str
    amount: Money


@dataclass(frozen=True)
class TransferResult:
    transfer_id: str
    amount: Money
    destination: str
    metadata: Mapping[str, str] = field(default_factory=dict)


class PaymentGateway(ABC):
    """Synchronous request/response API of the payment provider."""

    @abstractmethod
    def create_intent(self, amount: Money, metadata: Mapping[str, str], idempotency_key: str) -> IntentResult:
        """Open a payment hold for ``amount``; returns the client secret."""

    @abstractmethod
    def confirm_intent(self, intent_id: str, payment_method: str) -> IntentResult:
        ...

    @abstractmethod
    def capture_intent(self, intent_id: str, amount_to_capture: Optional[Money] = None) -> IntentResult:
        ...

    @abstractmethod
    def cancel_intent(self, intent_id: str, idempotency_key: str) -> IntentResult:
        ...

    @abstractmethod
    def refund(
        self,
        intent_id: str,
        amount: Money,
        idempotency_key: str,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> RefundResult:
        ...

    @abstractmethod
    def create_transfer(
        self,
        amount: Money,
        destination: str,
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> TransferResult:
        ...


def to_cents(amount: Decimal) -> int:
    """Convert Decimal dollars to integer cents, rounding to the nearest cent."""
    cents = (amount * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def _value(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _handle_stripe_error(exc: stripe.StripeError):
    """Map Stripe SDK errors onto internal exception types."""
    if isinstance(exc, stripe.CardError):
        raise ProviderDeclined(
            exc.user_message or "Your card was declined.",
            decline_code=getattr(exc, "code", "") or "",
        ) from exc
    if isinstance(exc, (stripe.RateLimitError, stripe.APIConnectionError, stripe.APIError)):
        raise ProviderUnavailable("Temporary payment provider error, please retry.") from exc
    if isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError)):
        logger.error("Stripe credentials are invalid or unauthorized: %s", exc)
        raise ProviderError("Payment provider is not configured correctly.") from exc
    if isinstance(exc, stripe.InvalidRequestError):
        raise ProviderError(exc.user_message or "Invalid payment request.") from exc
    raise ProviderError(exc.user_message or "Payment provider failure.") from exc


class StripeGateway(PaymentGateway):
    """Stripe implementation: one automatically captured PaymentIntent per attempt."""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key if api_key is not None else getattr(settings, "STRIPE_SECRET_KEY", "")

    def _configure(self):
        if not self.api_key:
            raise ProviderError("Stripe secret key not configured.")
        stripe.api_key = self.api_key

    @staticmethod
    def _intent_result(intent: Any, currency: str = "") -> IntentResult:
        amount_cents = _value(intent, "amount")
        intent_currency = (_value(intent, "currency") or currency or "usd").upper()
        return IntentResult(
            intent_id=_value(intent, "id"),
            status=_value(intent, "status", "") or "",
            client_secret=_value(intent, "client_secret", "") or "",
            amount=Money.from_minor_units(amount_cents, intent_currency) if amount_cents is not None else None,
        )

    def create_intent(self, amount: Money, metadata: Mapping[str, str], idempotency_key: str) -> IntentResult:
        self._configure()
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_cents(amount.amount),
                currency=amount.currency.lower(),
                automatic_payment_methods={**AUTOMATIC_PAYMENT_METHODS_CONFIG},
                capture_method="automatic",
                metadata=dict(metadata),
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            _handle_stripe_error(exc)
        return self._intent_result(intent, amount.currency)

    def confirm_intent(self, intent_id: str, payment_method: str) -> IntentResult:
        self._configure()
        try:
            intent = stripe.PaymentIntent.confirm(intent_id, payment_method=payment_method)
        except stripe.StripeError as exc:
            _handle_stripe_error(exc)
        return self._intent_result(intent)

    def capture_intent(self, intent_id: str, amount_to_capture: Optional[Money] = None) -> IntentResult:
        self._configure()
        params = {}
        if amount_to_capture is not None:
            params["amount_to_capture"] = to_cents(amount_to_capture.amount)
        try:
            intent = stripe.PaymentIntent.capture(intent_id, **params)
        except stripe.StripeError as exc:
            _handle_stripe_error(exc)
        return self._intent_result(intent)

    def cancel_intent(self, intent_id: str, idempotency_key: str) -> IntentResult:
        self._configure()
        try:
            intent = stripe.PaymentIntent.cancel(intent_id, idempotency_key=idempotency_key)
        except stripe.InvalidRequestError as exc:
            # Already canceled or succeeded intents cannot be canceled again.
            logger.info("Stripe PaymentIntent %s could not be canceled: %s", intent_id, exc.user_message)
            return IntentResult(intent_id=intent_id, status="unchanged")
        except stripe.StripeError as exc:
            _handle_stripe_error(exc)
        return self._intent_result(intent)

    def refund(
        self,
        intent_id: str,
        amount: Money,
        idempotency_key: str,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> RefundResult:
        self._configure()
        try:
            refund = stripe.Refund.create(
                payment_intent=intent_id,
                amount=to_cents(amount.amount),
                metadata=dict(metadata or {}),
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            _handle_stripe_error(exc)
        return RefundResult(
            refund_id=_value(refund, "id"),
            status=_value(refund, "status", "") or "",
            amount=amount,
        )

    def create_transfer(
        self,
        amount: Money,
        destination: str,
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> TransferResult:
        self._configure()
        try:
            transfer = stripe.Transfer.create(
                amount=to_cents(amount.amount),
                currency=amount.currency.lower(),
                destination=destination,
                metadata=dict(metadata),
                transfer_group=idempotency_key,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            _handle_stripe_error(exc)
        return TransferResult(
            transfer_id=_value(transfer, "id"),
            amount=amount,
            destination=destination,
            metadata=dict(metadata),
        )


def load_gateway() -> PaymentGateway:
    """Instantiate the gateway named by ``PAYMENT_GATEWAY_CLASS``."""
    path = getattr(settings, "PAYMENT_GATEWAY_CLASS", "apps.finances.gateway.StripeGateway")
    return import_string(path)()
