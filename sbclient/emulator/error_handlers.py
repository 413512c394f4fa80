"""
FastAPI Exception Handlers for the Emulator

Maps client exceptions to management-style ``<Error>`` XML responses.

Author: sbclient contributors
Date: 2026-10-17
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import Response

from ..atom import render_error
from ..constants import XML_MEDIA_TYPE
from ..exceptions import (
    EntityAlreadyExistsError,
    EntityNotFoundError,
    InvalidOperationError,
    ServiceBusError,
    TransportError,
)
from ..logging_utils import StructuredLogger


logger = StructuredLogger('sbclient.emulator.errors')


# Exception to HTTP status code mapping
EXCEPTION_STATUS_CODES = {
    EntityNotFoundError: status.HTTP_404_NOT_FOUND,
    EntityAlreadyExistsError: status.HTTP_409_CONFLICT,
    InvalidOperationError: status.HTTP_400_BAD_REQUEST,
}


def get_status_code_for_exception(exc: Exception) -> int:
    """HTTP status code for an exception (500 when unmapped)."""
    for exception_type, status_code in EXCEPTION_STATUS_CODES.items():
        if isinstance(exc, exception_type):
            return status_code

    if isinstance(exc, TransportError) and exc.status_code:
        return exc.status_code

    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def service_bus_exception_handler(request: Request, exc: ServiceBusError) -> Response:
    """Render a ServiceBusError as an ``<Error>`` body."""
    status_code = get_status_code_for_exception(exc)
    code = getattr(exc, "code", None) or exc.error_code

    logger.log_error(
        operation="api_error",
        error_type=type(exc).__name__,
        error_message=str(exc),
        error_code=exc.error_code,
        status_code=status_code,
        path=request.url.path,
    )

    return Response(
        content=render_error(code, exc.message),
        status_code=status_code,
        media_type=XML_MEDIA_TYPE,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> Response:
    logger.error(
        f"Unexpected error serving {request.url.path}",
        exc_info=True,
        operation="unexpected_error",
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return Response(
        content=render_error("InternalServerError", "An unexpected error occurred"),
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        media_type=XML_MEDIA_TYPE,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register the emulator's exception handlers on an app."""
    app.add_exception_handler(ServiceBusError, service_bus_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
