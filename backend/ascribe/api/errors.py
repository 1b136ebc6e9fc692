"""
Exception → (status_code, ErrorResponse) mapping.

Framework-agnostic: the FastAPI handlers in ascribe.main call
``error_response`` and wrap the result in a JSONResponse; nothing here
imports FastAPI.
"""

from __future__ import annotations

import logging
import traceback

from ascribe.core.errors import AscribeError, PreconditionError
from ascribe.schemas.documents import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "An unexpected error occurred. Our team has been notified."


def error_response(
    exc: BaseException,
    expose_stack: bool = False,
    request_id: str | None = None,
) -> tuple[int, ErrorResponse]:
    if isinstance(exc, AscribeError):
        status_code = exc.status_code
        error_code = exc.error_code
        message = exc.message
    else:
        status_code = 500
        error_code = "INTERNAL_ERROR"
        message = INTERNAL_ERROR_MESSAGE

    details: list[ErrorDetail] = []
    if isinstance(exc, PreconditionError) and exc.field:
        details.append(ErrorDetail(field=exc.field, message=exc.message, code=error_code))

    stack = None
    if expose_stack:
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

    body = ErrorResponse(
        error=message,
        error_code=error_code,
        message=message,
        details=details,
        request_id=request_id,
        stack=stack,
    )
    return status_code, body
