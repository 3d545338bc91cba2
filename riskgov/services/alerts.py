"""Alert sink: persists governance alerts to alert_instances."""

import uuid
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.db.models import AlertInstance

logger = structlog.get_logger(__name__)


class AlertSink:
    async def create(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        *,
        alert_type: str,
        category: str,
        severity: str,
        title: str,
        message: str,
        priority: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> AlertInstance:
        alert = AlertInstance(
            tenant_id=tenant_id,
            alert_type=alert_type,
            category=category,
            severity=severity,
            title=title,
            message=message,
            status="open",
            priority=priority,
            metadata_=metadata or {},
        )
        session.add(alert)
        await session.flush()
        logger.info(
            "alert_created",
            tenant_id=str(tenant_id),
            alert_id=str(alert.id),
            alert_type=alert_type,
            severity=severity,
        )
        return alert
