"""
Application Exceptions.

One taxonomy for the whole service:
- ValidationError          400  request or ledger write rejected before any write
- CrossTenantAccessError   403  tenant claim does not match the resource tenant
- NotFoundError            404
- NoActiveAppetiteError    409  only where an appetite is mandatory
- MetricResolutionError    internal, the rule is skipped
- DuplicateBreachError     internal, the breach is silently skipped
- EnforcementActionError   internal, captured into the per-rule action result
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

logger = structlog.get_logger(__name__)


# ============================================================================
# ERROR CODES
# ============================================================================


class ErrorCode(str, Enum):
    """Application error codes."""

    INTERNAL_ERROR = "E1000"
    VALIDATION_ERROR = "E1001"
    NOT_FOUND = "E1002"
    CONFLICT = "E1003"

    UNAUTHORIZED = "E2000"
    CROSS_TENANT_ACCESS = "E2001"
    INSUFFICIENT_ROLE = "E2002"

    NO_ACTIVE_APPETITE = "E4000"

    METRIC_RESOLUTION_FAILED = "E5000"
    DUPLICATE_BREACH = "E5001"
    ENFORCEMENT_FAILED = "E5002"


# ============================================================================
# ERROR RESPONSE MODEL
# ============================================================================


class ErrorDetail(BaseModel):
    """Detailed error information."""

    code: str
    message: str
    field: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Standard error response returned by every handler."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    error: ErrorDetail
    request_id: Optional[str] = None
    timestamp: Optional[str] = None


# ============================================================================
# BASE EXCEPTION
# ============================================================================


class RiskGovError(Exception):
    """Base exception for the service."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        self.field = field
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            error=ErrorDetail(
                code=self.code.value,
                message=self.message,
                field=self.field,
                details=self.details,
            ),
            request_id=request_id,
            timestamp=datetime.utcnow().isoformat(),
        )


# ============================================================================
# SPECIFIC EXCEPTIONS
# ============================================================================


class ValidationError(RiskGovError):
    """Malformed request or an invariant-violating write."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            field=field,
            details=details,
        )


class NotFoundError(RiskGovError):
    """Resource not found error."""

    def __init__(
        self,
        resource: str,
        identifier: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            code=ErrorCode.NOT_FOUND,
            status_code=404,
            details={"resource": resource, "identifier": identifier, **(details or {})},
        )


class ConflictError(RiskGovError):
    """A concurrent write lost against a uniqueness invariant."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code=ErrorCode.CONFLICT,
            status_code=409,
            details=details,
        )


class CrossTenantAccessError(RiskGovError):
    """Tenant claim does not match the resource's tenant."""

    def __init__(
        self,
        resource: str,
        identifier: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=f"Access to {resource} denied for this tenant",
            code=ErrorCode.CROSS_TENANT_ACCESS,
            status_code=403,
            details={"resource": resource, "identifier": identifier, **(details or {})},
        )


class AuthorizationError(RiskGovError):
    """Role too low for the requested operation."""

    def __init__(self, required_role: str, your_role: str):
        super().__init__(
            message=f"Insufficient role. Required: {required_role}",
            code=ErrorCode.INSUFFICIENT_ROLE,
            status_code=403,
            details={"required_role": required_role, "your_role": your_role},
        )


class NoActiveAppetiteError(RiskGovError):
    """No active risk appetite configured for the tenant."""

    def __init__(self, tenant_id: str):
        super().__init__(
            message="No active risk appetite configured",
            code=ErrorCode.NO_ACTIVE_APPETITE,
            status_code=409,
            details={"tenant_id": tenant_id},
        )


class MetricResolutionError(RiskGovError):
    """A metric has no recipe, or its query failed or timed out."""

    def __init__(self, metric_code: str, reason: str):
        self.metric_code = metric_code
        self.reason = reason
        super().__init__(
            message=f"Could not resolve metric {metric_code}: {reason}",
            code=ErrorCode.METRIC_RESOLUTION_FAILED,
            details={"metric_code": metric_code, "reason": reason},
        )


class DuplicateBreachError(RiskGovError):
    """An open breach already exists for the rule."""

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(
            message=f"Open breach already exists for rule {rule_id}",
            code=ErrorCode.DUPLICATE_BREACH,
            status_code=409,
            details={"rule_id": rule_id},
        )


class EnforcementActionError(RiskGovError):
    """The side effect of one enforcement action failed."""

    def __init__(self, action: str, reason: str):
        self.action = action
        self.reason = reason
        super().__init__(
            message=f"Enforcement action {action} failed: {reason}",
            code=ErrorCode.ENFORCEMENT_FAILED,
            details={"action": action, "reason": reason},
        )


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================


async def riskgov_exception_handler(request: Request, exc: RiskGovError) -> JSONResponse:
    """Render a RiskGovError in the shared error shape."""
    request_id = getattr(request.state, "request_id", None)

    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "request_rejected",
        error_code=exc.code.value,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response(request_id).model_dump(by_alias=True, mode="json"),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render FastAPI body/query validation failures as 400 ValidationError."""
    errors = exc.errors()
    field = None
    if errors:
        loc = [str(part) for part in errors[0].get("loc", ()) if part not in ("body", "query", "path")]
        field = ".".join(loc) or None
    error = ValidationError(
        message="Request validation failed",
        field=field,
        details={"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in errors]},
    )
    return await riskgov_exception_handler(request, error)


def register_exception_handlers(app) -> None:
    """Register exception handlers with the FastAPI app."""
    app.add_exception_handler(RiskGovError, riskgov_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
