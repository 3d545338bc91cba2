"""
FastAPI dependencies for the database session and tenant context.

TenantMiddleware decodes the JWT onto request.state; these dependencies
only read it. Every service call takes the tenant id explicitly.
"""

import uuid
from typing import AsyncGenerator, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.db.engine import get_session_factory
from riskgov.errors import CrossTenantAccessError, ErrorCode, RiskGovError


class MissingContextError(RiskGovError):
    def __init__(self, what: str):
        super().__init__(
            message=f"Missing {what} context",
            code=ErrorCode.UNAUTHORIZED,
            status_code=401,
        )


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """One session per request; committed on success, rolled back on error."""
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_tenant_id(request: Request) -> uuid.UUID:
    """Tenant from the verified token claim (set by TenantMiddleware)."""
    tenant_id = getattr(request.state, "tenant_id", None)
    if not tenant_id:
        raise MissingContextError("tenant")
    try:
        return uuid.UUID(str(tenant_id))
    except ValueError as e:
        raise MissingContextError("tenant") from e


def get_user_id(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise MissingContextError("user")
    return str(user_id)


def ensure_same_tenant(claimed: uuid.UUID, supplied: Optional[uuid.UUID], resource: str) -> None:
    """Reject a tenantId in query or body that differs from the token's tenant."""
    if supplied is not None and supplied != claimed:
        raise CrossTenantAccessError(resource, str(supplied))
