"""
Role-Based Access Control.

Role hierarchy (VIEWER < ANALYST < MANAGER < ADMIN < OWNER) and the
require_role dependency factory used by the routers:
- viewer: read endpoints
- analyst: detect, ledger writes, simulations
- manager: resolve breaches, archive scenarios
- admin: create and activate appetites
"""

from enum import IntEnum
from typing import Callable

import structlog
from fastapi import Request

from riskgov.errors import AuthorizationError

logger = structlog.get_logger(__name__)


class Role(IntEnum):
    """Ordered role hierarchy, higher value = more permissions."""

    VIEWER = 10
    ANALYST = 20
    MANAGER = 30
    ADMIN = 40
    OWNER = 50

    @classmethod
    def from_str(cls, value: str) -> "Role":
        """Convert string role name to Role enum, case-insensitive."""
        try:
            return cls[(value or "").upper()]
        except KeyError:
            return cls.VIEWER


def _extract_role_from_request(request: Request) -> Role:
    role_str = getattr(request.state, "user_role", "viewer")
    return Role.from_str(role_str)


def check_role(request: Request, minimum_role: Role) -> None:
    """Raise AuthorizationError (403) when the caller's role is too low."""
    role = _extract_role_from_request(request)
    if role < minimum_role:
        logger.warning(
            "role_denied",
            user_id=getattr(request.state, "user_id", "unknown"),
            role=role.name,
            required_role=minimum_role.name,
            path=request.url.path,
        )
        raise AuthorizationError(minimum_role.name.lower(), role.name.lower())


def require_role(minimum_role: Role) -> Callable[[Request], None]:
    """Dependency factory: Depends(require_role(Role.MANAGER))."""

    def dependency(request: Request) -> None:
        check_role(request, minimum_role)

    return dependency
