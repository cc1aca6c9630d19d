"""
Unified exception handler.

Installed as DRF's EXCEPTION_HANDLER setting. Clients check one thing:
  response.type present → something went wrong
  no type field         → success

Error body:
{
    "type":    "validation_error" | "block" | "data_integrity" | "gateway_error",
    "code":    "SUBSCRIPTION_ALREADY_LINKED",
    "message": "...",
    "detail":  { ... }  // optional
}
"""

import logging

from rest_framework.views import exception_handler as drf_default_handler
from rest_framework.exceptions import ValidationError as DRFValidationError
from django.http import JsonResponse

from .exceptions import BaseAppException

logger = logging.getLogger(__name__)


def unified_exception_handler(exc, context):
    """
    DRF exception handler entry point.

    Order:
    1. BaseAppException and subclasses → unified body
    2. DRF ValidationError (from serializer.is_valid) → unified body
    3. anything else → DRF default handling
    """

    if isinstance(exc, BaseAppException):
        if exc.http_status >= 500:
            logger.error("[API] %s %s: %s", exc.type, exc.code, exc.message)
        body = {
            'type': exc.type,
            'code': exc.code,
            'message': exc.message,
        }
        if exc.detail is not None:
            body['detail'] = exc.detail
        return JsonResponse(body, status=exc.http_status)

    if isinstance(exc, DRFValidationError):
        body = {
            'type': 'validation_error',
            'code': 'VALIDATION_ERROR',
            'message': 'Request validation failed',
            'detail': exc.detail,
        }
        return JsonResponse(body, status=400)

    return drf_default_handler(exc, context)
