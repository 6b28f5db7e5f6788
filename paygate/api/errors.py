"""
Translation of pipeline errors into HTTP responses.

Bodies are always {"detail": {"code", "reason"?, "message"}}.
"""

import logging

from fastapi import HTTPException

from paygate.pipeline.errors import (
    ConflictError,
    InvalidInputError,
    JobNotFoundError,
    PipelineError,
    ProviderAuthError,
    UnknownServiceError,
    VerificationRejected,
    WebhookRegistrationError,
)

logger = logging.getLogger(__name__)

# (exception type, HTTP status, API code), checked in order
_ERROR_MAP = [
    (VerificationRejected, 400, "PAYMENT_VERIFICATION_FAILED"),
    (ConflictError, 409, "CONFLICT"),
    (JobNotFoundError, 404, "NOT_FOUND"),
    (UnknownServiceError, 400, "UNKNOWN_SERVICE"),
    (InvalidInputError, 400, "INVALID_INPUT"),
    (WebhookRegistrationError, 400, "INVALID_WEBHOOK"),
    (ProviderAuthError, 401, "UNAUTHORIZED"),
]


def error_detail(code: str, message: str, reason: str | None = None) -> dict:
    detail = {"code": code, "message": message}
    if reason is not None:
        detail["reason"] = reason
    return detail


def to_http_exception(error: PipelineError) -> HTTPException:
    """Map a pipeline error to an HTTPException with a structured body."""
    for error_type, status_code, code in _ERROR_MAP:
        if isinstance(error, error_type):
            if isinstance(error, VerificationRejected):
                return HTTPException(
                    status_code=status_code,
                    detail=error_detail(code, error.detail, reason=error.reason),
                )
            return HTTPException(status_code=status_code, detail=error_detail(code, str(error)))

    logger.error(f"Unmapped pipeline error {error.code}: {error}")
    return HTTPException(
        status_code=500,
        detail=error_detail("INTERNAL_ERROR", f"Internal error ({error.code})"),
    )


def internal_error(action: str) -> HTTPException:
    """Generic 500 for unexpected exceptions (details stay in the log)."""
    return HTTPException(
        status_code=500,
        detail=error_detail("INTERNAL_ERROR", f"Failed to {action}"),
    )
