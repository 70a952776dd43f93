"""
Unified exception system.

Every business exception inherits BaseAppException and carries:
- type:        error category (validation_error / block / error)
- code:        business error code (MEDICINE_NOT_FOUND / INSUFFICIENT_STOCK / ...)
- message:     human-readable description, for operators, never shown verbatim to patients
- detail:      optional extra information (dict / list / None)
- http_status: HTTP status code

Services raise. The orchestrator turns rejections into structured results;
views let exception_handler format whatever is left.
"""


class BaseAppException(Exception):
    """Base class for all business exceptions."""

    type = 'error'
    code = 'UNKNOWN_ERROR'
    http_status = 500

    def __init__(self, message, code=None, detail=None, http_status=None):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.detail = detail
        super().__init__(message)

    def as_dict(self):
        body = {
            'code': self.code,
            'message': self.message,
        }
        if self.detail is not None:
            body['detail'] = self.detail
        return body


class ValidationError(BaseAppException):
    """Malformed input. Rejected before any mutation, retryable with corrected input. 400."""

    type = 'validation_error'
    code = 'VALIDATION_ERROR'
    http_status = 400


class MedicineNotFound(ValidationError):
    code = 'MEDICINE_NOT_FOUND'
    http_status = 404


class BlockError(BaseAppException):
    """A business rule stops the operation. 409."""

    type = 'block'
    code = 'BUSINESS_BLOCK'
    http_status = 409


class PrescriptionRequired(BlockError):
    """The medicine needs an on-file prescription and no proof was supplied."""

    code = 'PRESCRIPTION_REQUIRED'
    http_status = 403


class InsufficientStock(BlockError):
    """Requested qty exceeds stock. Raised at validation or by the commit-time check."""

    code = 'INSUFFICIENT_STOCK'


class InvalidTransition(BlockError):
    code = 'INVALID_TRANSITION'


class DispatchFailure(BaseAppException):
    """
    The fulfillment system could not be notified.

    Non-fatal: raised by dispatch clients only and always caught by the
    notifier, which leaves the order at processing and queues a retry.
    """

    code = 'DISPATCH_FAILED'
    http_status = 502


class TraceEmissionFailure(BaseAppException):
    """An audit span could not be stored. Logged, never propagated."""

    code = 'TRACE_EMISSION_FAILED'
