"""
Risk Appetite governance: versioned drafts and the activation transition.

Exactly one appetite per tenant may be active. activate() archives the
current active appetite and activates the target in the same transaction;
the partial unique index uq_risk_appetites_one_active rejects any
concurrent activation that slips past it.
"""

import uuid
from datetime import datetime
from typing import Optional, Sequence

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.appetite.metrics import get_recipe
from riskgov.appetite.schemas import AppetiteCreateRequest, AppetiteStatus
from riskgov.db.models import RiskAppetite, RiskAppetiteRule
from riskgov.errors import ConflictError, CrossTenantAccessError, NotFoundError, ValidationError
from riskgov.services.audit import AuditTrail

logger = structlog.get_logger(__name__)


class AppetiteGovernance:
    def __init__(self, audit: Optional[AuditTrail] = None):
        self.audit = audit or AuditTrail()

    async def get_active(self, session: AsyncSession, tenant_id: uuid.UUID) -> Optional[RiskAppetite]:
        result = await session.execute(
            select(RiskAppetite)
            .where(RiskAppetite.tenant_id == tenant_id)
            .where(RiskAppetite.status == AppetiteStatus.ACTIVE.value)
        )
        return result.scalar_one_or_none()

    async def get(
        self, session: AsyncSession, tenant_id: uuid.UUID, appetite_id: uuid.UUID
    ) -> RiskAppetite:
        appetite = await session.get(RiskAppetite, appetite_id)
        if appetite is None:
            raise NotFoundError("risk_appetite", str(appetite_id))
        if appetite.tenant_id != tenant_id:
            logger.warning(
                "appetite_cross_tenant_access",
                tenant_id=str(tenant_id),
                appetite_id=str(appetite_id),
            )
            raise CrossTenantAccessError("risk_appetite", str(appetite_id))
        return appetite

    async def list_appetites(self, session: AsyncSession, tenant_id: uuid.UUID) -> Sequence[RiskAppetite]:
        result = await session.execute(
            select(RiskAppetite)
            .where(RiskAppetite.tenant_id == tenant_id)
            .order_by(RiskAppetite.version.desc())
        )
        return result.scalars().all()

    async def create_draft(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        request: AppetiteCreateRequest,
        created_by: Optional[str] = None,
    ) -> RiskAppetite:
        """Create a draft with the next version number for the tenant."""
        unknown = sorted({r.metric_code for r in request.rules if get_recipe(r.metric_code) is None})
        if unknown:
            raise ValidationError(
                "rules reference unknown metric codes",
                field="rules",
                details={"unknown_metrics": unknown},
            )

        result = await session.execute(
            select(func.coalesce(func.max(RiskAppetite.version), 0))
            .where(RiskAppetite.tenant_id == tenant_id)
        )
        version = int(result.scalar_one()) + 1

        appetite = RiskAppetite(
            tenant_id=tenant_id,
            version=version,
            name=request.name,
            description=request.description,
            status=AppetiteStatus.DRAFT.value,
            created_by=created_by,
            rules=[
                RiskAppetiteRule(
                    tenant_id=tenant_id,
                    risk_domain=r.risk_domain,
                    metric_code=r.metric_code,
                    metric_label=r.metric_label or r.metric_code,
                    operator=r.operator.value,
                    threshold=r.threshold,
                    unit=r.unit,
                    severity=r.severity.value,
                    action_on_breach=r.action_on_breach.value,
                    is_enabled=r.is_enabled,
                )
                for r in request.rules
            ],
        )
        session.add(appetite)
        try:
            await session.flush()
        except IntegrityError as e:
            raise ConflictError("appetite version already exists", details={"version": version}) from e

        logger.info(
            "appetite_draft_created",
            tenant_id=str(tenant_id),
            appetite_id=str(appetite.id),
            version=version,
            rules=len(request.rules),
        )
        return appetite

    async def activate(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        appetite_id: uuid.UUID,
        actor_id: Optional[str] = None,
    ) -> RiskAppetite:
        target = await self.get(session, tenant_id, appetite_id)
        if target.status == AppetiteStatus.ACTIVE.value:
            return target

        previous = await self.get_active(session, tenant_id)
        try:
            if previous is not None:
                previous.status = AppetiteStatus.ARCHIVED.value
                await session.flush()
            target.status = AppetiteStatus.ACTIVE.value
            target.activated_at = datetime.utcnow()
            await session.flush()
        except IntegrityError as e:
            raise ConflictError(
                "another appetite was activated concurrently",
                details={"appetite_id": str(appetite_id)},
            ) from e

        await self.audit.append(
            session,
            tenant_id,
            action="RISK_APPETITE_ACTIVATED",
            resource_type="risk_appetite",
            resource_id=str(target.id),
            before_state={"activeAppetiteId": str(previous.id) if previous else None},
            after_state={"activeAppetiteId": str(target.id), "version": target.version},
            actor_type="USER" if actor_id else "SYSTEM",
            actor_id=actor_id,
        )
        logger.info(
            "appetite_activated",
            tenant_id=str(tenant_id),
            appetite_id=str(target.id),
            version=target.version,
            archived_appetite_id=str(previous.id) if previous else None,
        )
        return target
