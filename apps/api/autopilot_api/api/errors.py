"""Mapping of trigger errors onto HTTP responses."""

import logging

from autopilot_triggers.logging_utils import (
    DispatchError,
    IntegrationAuthFailure,
    InvalidNotification,
    InvalidStatusTransition,
    SourceNotFound,
    TriggerDisabled,
    TriggerError,
    TriggerValidationError,
)
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

# Most specific first; the first matching class wins.
ERROR_STATUS_CODES: list[tuple[type[TriggerError], int]] = [
    (TriggerValidationError, 400),
    (InvalidNotification, 400),
    (IntegrationAuthFailure, 401),
    (TriggerDisabled, 403),
    (SourceNotFound, 404),
    (InvalidStatusTransition, 409),
    (DispatchError, 502),
]


def status_code_for(error: TriggerError) -> int:
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            return status_code
    return 500


async def trigger_error_handler(request: Request, exc: TriggerError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"Unhandled trigger error on {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.__class__.__name__,
            "detail": str(exc),
            "correlationId": exc.correlation_id,
        },
    )


def register_trigger_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TriggerError, trigger_error_handler)
