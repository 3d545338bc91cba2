"""
Detect Scheduler: runs in a separate process, not inside the API.

Every DETECT_INTERVAL_MINUTES it runs detect_and_enforce for every active
tenant. Each tenant gets its own session and transaction, so one tenant's
failure never rolls back another's breaches. Tenants run concurrently,
bounded by SCHEDULER_MAX_CONCURRENT_TENANTS; rules within a tenant run
sequentially inside the engine.
"""

import asyncio
import uuid
from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker

from riskgov.appetite.engine import RiskAppetiteEngine
from riskgov.config import settings
from riskgov.db import queries

logger = structlog.get_logger(__name__)


class DetectScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        engine: Optional[RiskAppetiteEngine] = None,
        interval_minutes: Optional[int] = None,
        max_concurrent_tenants: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.engine = engine or RiskAppetiteEngine()
        self.interval_minutes = interval_minutes or settings.detect_interval_minutes
        self.max_concurrent_tenants = max_concurrent_tenants or settings.scheduler_max_concurrent_tenants
        self.scheduler = AsyncIOScheduler()

    def start(self):
        """Register the detect job and start the scheduler."""
        self.scheduler.add_job(
            self.run_all_tenants,
            IntervalTrigger(minutes=self.interval_minutes),
            id="risk_appetite_detect",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("detect_scheduler_started", interval_minutes=self.interval_minutes)

    def stop(self):
        self.scheduler.shutdown(wait=True)
        logger.info("detect_scheduler_stopped")

    async def run_all_tenants(self) -> dict[str, int]:
        """One detect pass over every active tenant. Returns new-breach counts per tenant."""
        async with self.session_factory() as session:
            tenants = await queries.get_active_tenants(session)
        tenant_ids = [t.id for t in tenants]

        logger.info("detect_pass_started", tenants=len(tenant_ids))
        semaphore = asyncio.Semaphore(self.max_concurrent_tenants)

        async def _bounded(tenant_id: uuid.UUID) -> Optional[int]:
            async with semaphore:
                return await self._detect_tenant(tenant_id)

        counts = await asyncio.gather(*(_bounded(tid) for tid in tenant_ids))
        results = {str(tid): n for tid, n in zip(tenant_ids, counts) if n is not None}

        logger.info(
            "detect_pass_completed",
            tenants=len(tenant_ids),
            failed=len(tenant_ids) - len(results),
            new_breaches=sum(results.values()),
        )
        return results

    async def _detect_tenant(self, tenant_id: uuid.UUID) -> Optional[int]:
        """Detect for one tenant in its own transaction. None on failure."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await self.engine.detect_and_enforce(session, tenant_id)
        except Exception as e:
            logger.error("tenant_detect_failed", tenant_id=str(tenant_id), error=str(e))
            return None
        return len(result.new_breaches)
