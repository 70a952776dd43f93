"""
Unified exception handler.

Wired into DRF's EXCEPTION_HANDLER setting.
Callers check every response the same way:
  body.type in ('error', 'validation_error', 'block')  → something went wrong
  no type key  → success

Unified error body:
{
    "type":    "validation_error" | "block" | "error",
    "code":    "MEDICINE_NOT_FOUND",
    "message": "Unknown medicine 'MED999'",
    "detail":  { ... }  // optional
}
"""

from rest_framework.views import exception_handler as drf_default_handler
from rest_framework.exceptions import ValidationError as DRFValidationError
from django.http import JsonResponse

from .exceptions import BaseAppException


def unified_exception_handler(exc, context):
    """
    DRF exception handler entry point.

    Order of precedence:
    1. BaseAppException and subclasses → unified format
    2. DRF's own ValidationError → unified format
    3. everything else → DRF's default handling
    """

    # --- 1. our own exception hierarchy ---
    if isinstance(exc, BaseAppException):
        body = {'type': exc.type}
        body.update(exc.as_dict())
        return JsonResponse(body, status=exc.http_status)

    # --- 2. DRF's ValidationError ---
    if isinstance(exc, DRFValidationError):
        body = {
            'type': 'validation_error',
            'code': 'VALIDATION_ERROR',
            'message': 'Request validation failed',
            'detail': exc.detail,
        }
        return JsonResponse(body, status=400)

    # --- 3. leave the rest to DRF ---
    return drf_default_handler(exc, context)
