"""
REST framework integration for domain errors

Registered as ``REST_FRAMEWORK['EXCEPTION_HANDLER']``. Domain errors are
rendered as ``{"detail": ..., "code": ..., **details}`` with the status
code each error class declares; everything else falls through to the
framework default handler.
"""

import logging

from rest_framework.response import Response  # type: ignore
from rest_framework.views import exception_handler as drf_exception_handler  # type: ignore

from shared.domain.exceptions import DomainError, InfrastructureError

logger = logging.getLogger(__name__)


def domain_exception_handler(exc, context):
    if isinstance(exc, DomainError):
        view = context.get('view')
        view_name = view.__class__.__name__ if view is not None else '-'
        if isinstance(exc, InfrastructureError):
            logger.error("Infrastructure failure in %s: %s", view_name, exc, exc_info=exc)
        else:
            logger.info("Domain error in %s: %s (%s)", view_name, exc.message, exc.code)
        return Response(exc.to_dict(), status=exc.status_code)

    return drf_exception_handler(exc, context)
