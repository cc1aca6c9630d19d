"""
Unified exception hierarchy.

Every business exception derives from BaseAppException and carries:
- type:        error category (validation_error / block / data_integrity / gateway_error)
- code:        business error code (DOSE_SCHEDULE_INVALID / SUBSCRIPTION_ALREADY_LINKED / ...)
- message:     human readable description
- detail:      optional extra payload (dict / list / None)
- http_status: HTTP status when the exception reaches a view

Views only raise; exception_handler formats the response. Celery tasks use the
type to decide between retrying (GatewayError) and failing loudly
(DataIntegrityError).
"""


class BaseAppException(Exception):
    """Base class for every business exception."""

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


class ValidationError(BaseAppException):
    """Malformed input (webhook body, dose schedule). 400."""

    type = 'validation_error'
    code = 'VALIDATION_ERROR'
    http_status = 400


class BlockError(BaseAppException):
    """A business rule refuses the operation. 409."""

    type = 'block'
    code = 'BUSINESS_BLOCK'
    http_status = 409


class DataIntegrityError(BaseAppException):
    """
    An expected linkage is missing or contradicts itself.

    e.g. a signed prescription with no subscription to link, or a subscription
    already linked to another prescription. Never retried: the step is recorded
    as a StepFailure and an operator has to look at it.
    """

    type = 'data_integrity'
    code = 'DATA_INTEGRITY_ERROR'
    http_status = 409


class GatewayError(BaseAppException):
    """
    An external collaborator failed or its outcome is unknown (timeout).

    Always retried with backoff; local state is never updated on a guess.
    """

    type = 'gateway_error'
    code = 'GATEWAY_ERROR'
    http_status = 502
