"""
Global Error Handler Middleware.

Catches every exception the exception handlers did not render and returns
the shared error shape. Never leaks stack traces or database errors to
clients; each error gets an error_id for correlation with server logs.
"""

import traceback
import uuid

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from riskgov.config import settings
from riskgov.errors import RiskGovError

logger = structlog.get_logger(__name__)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Outermost middleware: catches everything."""

    async def dispatch(self, request: Request, call_next) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            error_id = str(uuid.uuid4())
            logger.error(
                "unhandled_exception",
                error_id=error_id,
                path=request.url.path,
                method=request.method,
                error=str(exc),
                traceback=traceback.format_exc(),
            )

            error = RiskGovError(
                "An internal error occurred. Please try again later.",
                details={"error_id": error_id},
            )
            if settings.debug:
                error.details["debug_hint"] = type(exc).__name__

            request_id = getattr(request.state, "request_id", None)
            return JSONResponse(
                status_code=error.status_code,
                content=error.to_response(request_id).model_dump(by_alias=True, mode="json"),
            )
