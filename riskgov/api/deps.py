"""
FastAPI dependencies for API routes.

Re-exports auth dependencies for convenience.
"""

from riskgov.auth.dependencies import ensure_same_tenant, get_db, get_tenant_id, get_user_id
from riskgov.auth.rbac import Role, require_role

__all__ = ["get_db", "get_tenant_id", "get_user_id", "ensure_same_tenant", "Role", "require_role"]
