"""
Webhook ingress for payment provider notifications.

Signature scheme (Stripe): header ``t=<unix ts>,v1=<hex hmac>[,v1=...]``
checked by ``stripe.WebhookSignature`` against the raw body before
anything is parsed.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

import stripe

from apps.finances.application.lifecycle import PaymentLifecycleManager, ReconcileResult
from apps.finances.application.settlement import CancellationSettlement
from apps.finances.domain.notifications import MalformedNotification, parse_notification
from shared.domain.exceptions import DomainError, InvalidSignature

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")


def verify_signature(payload: bytes, header: Optional[str], secret: str, tolerance: int = 300) -> None:
    """Check the signature header against the raw body."""
    if not secret:
        security_logger.error("Webhook secret not configured; rejecting notification")
        raise InvalidSignature()
    if not header:
        security_logger.warning("Webhook rejected: missing signature header")
        raise InvalidSignature()

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError:
        security_logger.warning("Webhook rejected: body is not UTF-8")
        raise InvalidSignature() from None

    try:
        stripe.WebhookSignature.verify_header(body, header, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError as exc:
        security_logger.warning("Webhook rejected: %s", exc.user_message or "signature mismatch")
        raise InvalidSignature() from None


class WebhookIngress:
    """verify -> decode -> parse -> reconcile -> return or settle what became owed"""

    def __init__(
        self,
        payments: PaymentLifecycleManager,
        settlement: CancellationSettlement,
        secret: str,
        tolerance: int = 300,
    ):
        self.payments = payments
        self.settlement = settlement
        self.secret = secret
        self.tolerance = tolerance

    def handle(self, payload: bytes, signature_header: Optional[str]) -> ReconcileResult:
        verify_signature(payload, signature_header, self.secret, self.tolerance)

        try:
            envelope = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            logger.warning("Webhook body is not valid JSON")
            raise MalformedNotification() from None

        notification = parse_notification(envelope)
        result = self.payments.reconcile(notification)

        if result.needs_refund and result.payment_id is not None:
            try:
                self.payments.refund_superseded(result.payment_id)
            except DomainError as exc:
                logger.warning("Superseded payment %s left for the periodic refund: %s", result.payment_id, exc.message)
        if result.needs_settlement and result.rental_id is not None:
            self.settlement.settle(result.rental_id)
        return result
