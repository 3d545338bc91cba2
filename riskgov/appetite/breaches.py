"""
Breach Event Recorder.

At most one unresolved breach per (tenant_id, rule_id), enforced by the
partial unique index uq_risk_breach_events_one_open. A breach slot is
claimed with INSERT .. ON CONFLICT DO NOTHING against that index, so two
concurrent detect passes can never both claim it; only the winner runs
the enforcement action. Resolution is always an explicit call.
"""

import uuid
from datetime import datetime
from typing import Optional, Sequence

import structlog
from sqlalchemy import select, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.appetite.schemas import ActionResult
from riskgov.db.models import BreachEvent, RiskAppetiteRule
from riskgov.errors import (
    CrossTenantAccessError,
    DuplicateBreachError,
    NotFoundError,
    ValidationError,
)
from riskgov.services.audit import AuditTrail

logger = structlog.get_logger(__name__)

# Must match the predicate of uq_risk_breach_events_one_open per dialect
_OPEN_PREDICATE = {
    "postgresql": "is_resolved = false",
    "sqlite": "is_resolved = 0",
}
_DIALECT_INSERT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class BreachRecorder:
    def __init__(self, audit: Optional[AuditTrail] = None):
        self.audit = audit or AuditTrail()

    async def claim(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        rule: RiskAppetiteRule,
        metric_value: float,
    ) -> uuid.UUID:
        """
        Insert an open breach for the rule unless one already exists.

        Returns the new breach id; raises DuplicateBreachError when the rule
        already has an open breach.
        """
        dialect = session.get_bind().dialect.name
        insert = _DIALECT_INSERT.get(dialect)
        if insert is None:
            raise RuntimeError(f"unsupported dialect for breach dedup: {dialect}")

        breach_id = uuid.uuid4()
        stmt = (
            insert(BreachEvent)
            .values(
                id=breach_id,
                tenant_id=tenant_id,
                risk_appetite_id=rule.risk_appetite_id,
                rule_id=rule.id,
                metric_code=rule.metric_code,
                metric_value=metric_value,
                threshold=rule.threshold,
                operator=rule.operator,
                severity=rule.severity,
                action_taken=rule.action_on_breach,
                action_result={"status": "pending"},
                breached_at=datetime.utcnow(),
                is_resolved=False,
            )
            .on_conflict_do_nothing(
                index_elements=["tenant_id", "rule_id"],
                index_where=text(_OPEN_PREDICATE[dialect]),
            )
            .returning(BreachEvent.id)
        )
        result = await session.execute(stmt)
        claimed = result.scalar_one_or_none()
        if claimed is None:
            raise DuplicateBreachError(str(rule.id))
        return claimed

    async def attach_action_result(
        self,
        session: AsyncSession,
        breach_id: uuid.UUID,
        action_result: ActionResult,
    ) -> BreachEvent:
        breach = await session.get(BreachEvent, breach_id)
        breach.action_result = action_result.model_dump(mode="json")
        await session.flush()
        return breach

    async def record_if_new(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        rule: RiskAppetiteRule,
        metric_value: float,
        action_result: ActionResult,
    ) -> Optional[BreachEvent]:
        """Claim and finalize in one step; None when a breach is already open."""
        try:
            breach_id = await self.claim(session, tenant_id, rule, metric_value)
        except DuplicateBreachError:
            return None
        return await self.attach_action_result(session, breach_id, action_result)

    async def get(
        self, session: AsyncSession, tenant_id: uuid.UUID, breach_id: uuid.UUID
    ) -> BreachEvent:
        breach = await session.get(BreachEvent, breach_id)
        if breach is None:
            raise NotFoundError("risk_breach_event", str(breach_id))
        if breach.tenant_id != tenant_id:
            logger.warning(
                "breach_cross_tenant_access",
                tenant_id=str(tenant_id),
                breach_id=str(breach_id),
            )
            raise CrossTenantAccessError("risk_breach_event", str(breach_id))
        return breach

    async def resolve(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        breach_id: uuid.UUID,
        notes: Optional[str] = None,
        resolved_by: Optional[str] = None,
    ) -> BreachEvent:
        breach = await self.get(session, tenant_id, breach_id)
        if breach.is_resolved:
            raise ValidationError("breach is already resolved", field="breachId")
        breach.is_resolved = True
        breach.resolved_at = datetime.utcnow()
        breach.resolution_notes = notes
        breach.resolved_by = resolved_by
        await session.flush()
        await self.audit.append(
            session,
            tenant_id,
            action="RISK_BREACH_RESOLVED",
            resource_type="risk_breach_event",
            resource_id=str(breach_id),
            before_state={"isResolved": False},
            after_state={
                "isResolved": True,
                "resolvedBy": resolved_by,
                "resolutionNotes": notes,
            },
            actor_type="USER" if resolved_by else "SYSTEM",
            actor_id=resolved_by,
        )
        logger.info(
            "breach_resolved",
            tenant_id=str(tenant_id),
            breach_id=str(breach_id),
            rule_id=str(breach.rule_id),
        )
        return breach

    async def list_breaches(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        unresolved_only: bool = False,
        limit: int = 50,
    ) -> Sequence[BreachEvent]:
        stmt = (
            select(BreachEvent)
            .where(BreachEvent.tenant_id == tenant_id)
            .order_by(BreachEvent.breached_at.desc())
            .limit(limit)
        )
        if unresolved_only:
            stmt = stmt.where(BreachEvent.is_resolved.is_(False))
        result = await session.execute(stmt)
        return result.scalars().all()
