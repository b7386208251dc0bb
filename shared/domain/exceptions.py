"""
Domain Exceptions

One taxonomy for every bounded context. Each error carries a stable
machine-readable ``code`` and the HTTP status the API layer maps it to,
plus optional structured ``details`` the client can react to (for example
the ids of conflicting bookings).
"""

from typing import Any, Dict


class DomainError(Exception):
    """Base class for expected, caller-visible domain failures."""

    code = 'domain_error'
    status_code = 400
    default_message = 'Request could not be processed.'

    def __init__(self, message: str = '', **details: Any):
        self.message = message or self.default_message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        payload = {'detail': self.message, 'code': self.code}
        payload.update(self.details)
        return payload


# ===== Validation =====

class ValidationFailed(DomainError):
    code = 'validation_failed'
    status_code = 400


class InvalidInterval(ValidationFailed):
    code = 'invalid_interval'
    default_message = 'End must be after start.'


class InvalidRentalType(ValidationFailed):
    code = 'invalid_rental_type'
    default_message = 'This item cannot be rented with the requested rental type.'


class InvalidAmount(ValidationFailed):
    code = 'invalid_amount'
    default_message = 'Amount must be greater than zero.'


# ===== Lookup / authorization =====

class NotFound(DomainError):
    code = 'not_found'
    status_code = 404
    default_message = 'Not found.'


class PermissionDenied(DomainError):
    code = 'permission_denied'
    status_code = 403
    default_message = 'You are not allowed to perform this action.'


# ===== Conflicts =====

class ConflictError(DomainError):
    code = 'conflict'
    status_code = 409


class IntervalConflict(ConflictError):
    code = 'interval_conflict'
    default_message = 'The requested period is not available.'


class ItemUnavailable(ConflictError):
    code = 'item_unavailable'
    default_message = 'This item is not available for rent.'


class InvalidTransition(ConflictError):
    code = 'invalid_transition'


class AlreadyHeld(ConflictError):
    code = 'deposit_already_held'
    default_message = 'Security deposit is already held.'


class NotHeld(ConflictError):
    code = 'deposit_not_held'
    default_message = 'Security deposit is not held.'


class PaymentRetriesExhausted(ConflictError):
    code = 'payment_retries_exhausted'
    default_message = 'Maximum number of payment attempts reached.'


class SettlementInProgress(ConflictError):
    code = 'settlement_in_progress'
    default_message = 'Another settlement for this deposit is in progress.'


# ===== Inbound notifications =====

class InvalidSignature(DomainError):
    code = 'invalid_signature'
    status_code = 403
    default_message = 'Invalid signature'


# ===== Payment provider =====

class ProviderError(DomainError):
    code = 'provider_error'
    status_code = 502
    default_message = 'Payment provider error.'


class ProviderDeclined(ProviderError):
    code = 'payment_declined'
    status_code = 402
    default_message = 'Your card was declined.'


class ProviderUnavailable(ProviderError):
    code = 'provider_unavailable'
    status_code = 503
    default_message = 'Temporary payment provider error, please retry.'


# ===== Infrastructure =====

class InfrastructureError(DomainError):
    """Datastore or other infrastructure failure after local retries."""

    code = 'internal_error'
    status_code = 500
    default_message = 'Internal server error.'
