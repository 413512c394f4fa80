"""
Correlation ID Middleware for the Emulator

Binds the caller's correlation id (or a new one) to each request so that
every log line written while serving it carries the same id, and echoes
the id on the response.

Author: sbclient contributors
Date: 2026-10-17
"""

import time

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from ..logging_utils import CorrelationContext, StructuredLogger


logger = StructuredLogger('sbclient.emulator.middleware')

# Header names accepted from clients, in order of preference.
REQUEST_ID_HEADERS = (CorrelationContext.HEADER, 'x-ms-client-request-id')


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Propagates correlation ids through emulator requests."""

    async def dispatch(self, request: Request, call_next) -> Response:
        incoming = next(
            (request.headers[name] for name in REQUEST_ID_HEADERS if request.headers.get(name)),
            None,
        )

        with CorrelationContext.scope(incoming) as correlation_id:
            started = time.perf_counter()
            response: Response = await call_next(request)
            response.headers[CorrelationContext.HEADER] = correlation_id
            logger.info(
                f"{request.method} {request.url.path} - {response.status_code}",
                operation="request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            return response
