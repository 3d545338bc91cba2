"""
Automation / ML feature-flag store (tenant_ml_settings).

A tenant without a row has every automation enabled; the row is created
on first write.
"""

import uuid
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.db.models import TenantAutomationSettings

logger = structlog.get_logger(__name__)


class FlagStore:
    async def get(self, session: AsyncSession, tenant_id: uuid.UUID) -> Optional[TenantAutomationSettings]:
        return await session.get(TenantAutomationSettings, tenant_id)

    async def get_or_create(self, session: AsyncSession, tenant_id: uuid.UUID) -> TenantAutomationSettings:
        row = await self.get(session, tenant_id)
        if row is None:
            row = TenantAutomationSettings(
                tenant_id=tenant_id,
                auto_reconciliation_enabled=True,
                ml_enabled=True,
                ml_status="ACTIVE",
                approval_gated_domains=[],
            )
            session.add(row)
            await session.flush()
        return row

    async def snapshot(self, session: AsyncSession, tenant_id: uuid.UUID) -> dict:
        """Current flag state as a plain dict (defaults when no row exists)."""
        row = await self.get(session, tenant_id)
        if row is None:
            return {
                "autoReconciliationEnabled": True,
                "mlEnabled": True,
                "mlStatus": "ACTIVE",
                "approvalGatedDomains": [],
            }
        return {
            "autoReconciliationEnabled": row.auto_reconciliation_enabled,
            "mlEnabled": row.ml_enabled,
            "mlStatus": row.ml_status,
            "approvalGatedDomains": list(row.approval_gated_domains or []),
        }

    async def disable_auto_reconciliation(
        self, session: AsyncSession, tenant_id: uuid.UUID, reason: str
    ) -> TenantAutomationSettings:
        row = await self.get_or_create(session, tenant_id)
        row.auto_reconciliation_enabled = False
        row.last_fallback_reason = reason
        row.last_fallback_at = datetime.utcnow()
        await session.flush()
        logger.warning("auto_reconciliation_disabled", tenant_id=str(tenant_id), reason=reason)
        return row

    async def disable_ml(
        self, session: AsyncSession, tenant_id: uuid.UUID, reason: str
    ) -> TenantAutomationSettings:
        row = await self.get_or_create(session, tenant_id)
        row.ml_enabled = False
        row.ml_status = "DISABLED"
        row.last_fallback_reason = reason
        row.last_fallback_at = datetime.utcnow()
        await session.flush()
        logger.warning("ml_disabled", tenant_id=str(tenant_id), reason=reason)
        return row

    async def gate_domain(
        self, session: AsyncSession, tenant_id: uuid.UUID, domain: str
    ) -> TenantAutomationSettings:
        """Mark a risk domain as requiring approval (idempotent)."""
        row = await self.get_or_create(session, tenant_id)
        domains = list(row.approval_gated_domains or [])
        if domain not in domains:
            # Reassign so the JSON column is flagged dirty
            row.approval_gated_domains = domains + [domain]
            await session.flush()
            logger.info("approval_gate_enabled", tenant_id=str(tenant_id), domain=domain)
        return row
