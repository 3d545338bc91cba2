"""
Tenant Middleware.

Every non-public request must carry a Bearer JWT. The verified tenant_id,
user_id, email and role are attached to request.state; nothing downstream
trusts a tenant id supplied any other way.
"""

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from riskgov.auth.jwt import TokenError, decode_token
from riskgov.errors import ErrorCode, RiskGovError

logger = structlog.get_logger(__name__)

# Paths that bypass authentication
PUBLIC_PATHS = frozenset({
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
})


def _unauthorized(request: Request, message: str) -> Response:
    error = RiskGovError(message, code=ErrorCode.UNAUTHORIZED, status_code=401)
    request_id = getattr(request.state, "request_id", None)
    return JSONResponse(
        status_code=401,
        content=error.to_response(request_id).model_dump(by_alias=True, mode="json"),
    )


class TenantMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path

        # CORS preflight is handled by CORSMiddleware
        if request.method == "OPTIONS":
            return await call_next(request)

        if path in PUBLIC_PATHS or path.rstrip("/") in PUBLIC_PATHS:
            return await call_next(request)

        token = self._extract_token(request)
        if not token:
            return _unauthorized(request, "Missing authentication token")

        try:
            payload = decode_token(token)
        except TokenError as e:
            logger.warning("tenant_auth_failed", error=str(e), path=path)
            return _unauthorized(request, "Invalid or expired token")

        request.state.tenant_id = payload["tenant_id"]
        request.state.user_id = payload["user_id"]
        request.state.user_email = payload.get("email", "")
        request.state.user_role = payload.get("role", "viewer")
        structlog.contextvars.bind_contextvars(tenant_id=payload["tenant_id"])

        return await call_next(request)

    def _extract_token(self, request: Request) -> str | None:
        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            return auth[7:]
        return None
