"""HTTP Error Mapping — turns exceptions raised under a route into JSON bodies.

Invariants:
    - DistributorError keeps its own code and HTTP status
    - Anything else is a 500 with a fixed body; internals stay in the logs
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from fee_distributor.core.errors import DistributorError, ErrorSeverity

logger = logging.getLogger(__name__)

_INTERNAL_ERROR_BODY = {
    "error": {
        "code": "INTERNAL_ERROR",
        "message": "An unexpected error occurred",
        "category": "internal",
        "severity": ErrorSeverity.CRITICAL.value,
    },
}


async def handle_distributor_error(request: Request, exc: DistributorError) -> JSONResponse:
    logger.error(exc.message, extra={"error_code": exc.code, "path": request.url.path})
    return JSONResponse(status_code=exc.http_status, content=exc.to_response())


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"Unhandled {type(exc).__name__}",
        exc_info=exc,
        extra={"path": request.url.path, "error_code": "INTERNAL_ERROR"},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_INTERNAL_ERROR_BODY,
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DistributorError, handle_distributor_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
