"""
Fact Ledger: append-only store of metric observations.

Rows are never updated or deleted. A correction is a new observation whose
supersedes_id points at the replaced one; the current value for a key is
always the latest as_of per (tenant_id, metric_code, entity_id).
"""

import hashlib
import json
import math
import uuid
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.config import settings
from riskgov.db.models import MetricObservation
from riskgov.errors import CrossTenantAccessError, NotFoundError, ValidationError
from riskgov.ledger.schemas import (
    DEFAULT_CONFIDENCE,
    SETTLED_AUTHORITIES,
    Authority,
    Provenance,
    SnapshotCreateRequest,
    SnapshotExplanation,
    StaleCheckResponse,
    StaleMetric,
    TruthLevel,
)

logger = structlog.get_logger(__name__)

REQUIRED_CASH_METRICS: tuple[str, ...] = ("cash_today", "cash_flow_today", "cash_next_7d")

# Upper bound on supersedes-chain walks
MAX_LINEAGE_DEPTH = 100


def check_truth_authority(truth_level: TruthLevel, authority: Authority) -> None:
    """
    Enforce the pairing: provisional <=> RULE, settled <=> a system of record.

    Raises ValidationError on violation.
    """
    if truth_level == TruthLevel.PROVISIONAL and authority != Authority.RULE:
        raise ValidationError(
            "provisional observations must have authority RULE",
            field="authority",
            details={"truth_level": truth_level.value, "authority": authority.value},
        )
    if truth_level == TruthLevel.SETTLED and authority not in SETTLED_AUTHORITIES:
        raise ValidationError(
            "settled observations require authority BANK, MANUAL, ACCOUNTING, GATEWAY or CARRIER",
            field="authority",
            details={"truth_level": truth_level.value, "authority": authority.value},
        )


def compute_calculation_hash(
    metric_code: str,
    metric_version: int,
    value: float,
    as_of: datetime,
    derived_from: dict,
) -> str:
    """SHA-256 over the value and its provenance."""
    payload = json.dumps(
        {
            "metric_code": metric_code,
            "metric_version": metric_version,
            "value": value,
            "as_of": as_of.isoformat(),
            "derived_from": derived_from,
        },
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(payload.encode()).hexdigest()


class FactLedger:
    """Write and read access to decision snapshots."""

    def __init__(self, stale_minutes: Optional[int] = None):
        self.stale_minutes = stale_minutes or settings.snapshot_stale_minutes

    async def append(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        request: SnapshotCreateRequest,
        created_by: Optional[str] = None,
    ) -> MetricObservation:
        """
        Validate and insert one observation.

        Every check runs before anything is added to the session, so a
        rejected write leaves no trace.
        """
        if request.tenant_id is not None and request.tenant_id != tenant_id:
            logger.warning(
                "ledger_cross_tenant_write",
                tenant_id=str(tenant_id),
                requested_tenant_id=str(request.tenant_id),
            )
            raise CrossTenantAccessError("decision_snapshot", str(request.tenant_id))

        check_truth_authority(request.truth_level, request.authority)

        if not math.isfinite(request.value):
            raise ValidationError("value must be a finite number", field="value")

        if request.supersedes_id is not None:
            await self._check_supersedes(session, tenant_id, request.metric_code, request.supersedes_id)

        confidence = request.confidence
        if confidence is None:
            confidence = DEFAULT_CONFIDENCE[request.truth_level]

        as_of = request.as_of or datetime.utcnow()
        if as_of.tzinfo is not None:
            as_of = as_of.replace(tzinfo=None) - (as_of.utcoffset() or timedelta(0))
        derived_from = request.derived_from.model_dump(mode="json")

        observation = MetricObservation(
            tenant_id=tenant_id,
            metric_code=request.metric_code,
            metric_version=request.metric_version,
            entity_type=request.entity_type,
            entity_id=request.entity_id,
            dimensions=request.dimensions,
            value=request.value,
            currency=request.currency or settings.default_currency,
            truth_level=request.truth_level.value,
            authority=request.authority.value,
            confidence=confidence,
            as_of=as_of,
            derived_from=derived_from,
            calculation_hash=compute_calculation_hash(
                request.metric_code, request.metric_version, request.value, as_of, derived_from,
            ),
            supersedes_id=request.supersedes_id,
            created_by=created_by,
        )
        session.add(observation)
        await session.flush()

        logger.info(
            "snapshot_recorded",
            tenant_id=str(tenant_id),
            snapshot_id=str(observation.id),
            metric_code=observation.metric_code,
            truth_level=observation.truth_level,
            authority=observation.authority,
        )
        return observation

    async def record_rule_observation(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        metric_code: str,
        value: float,
        provenance: Provenance,
        confidence: Optional[float] = None,
    ) -> MetricObservation:
        """Append a provisional, RULE-derived observation."""
        request = SnapshotCreateRequest(
            metric_code=metric_code,
            value=value,
            truth_level=TruthLevel.PROVISIONAL,
            authority=Authority.RULE,
            confidence=confidence,
            derived_from=provenance,
        )
        return await self.append(session, tenant_id, request, created_by="system")

    async def _check_supersedes(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        metric_code: str,
        supersedes_id: uuid.UUID,
    ) -> None:
        prior = await session.get(MetricObservation, supersedes_id)
        if prior is None:
            raise ValidationError(
                "supersedesId does not reference an existing observation",
                field="supersedesId",
            )
        if prior.tenant_id != tenant_id:
            logger.warning(
                "ledger_cross_tenant_supersede",
                tenant_id=str(tenant_id),
                snapshot_id=str(supersedes_id),
            )
            raise CrossTenantAccessError("decision_snapshot", str(supersedes_id))
        if prior.metric_code != metric_code:
            raise ValidationError(
                "supersedesId must reference an observation of the same metric",
                field="supersedesId",
                details={"expected": metric_code, "found": prior.metric_code},
            )

    # ── Reads ──────────────────────────────────────────────────────────

    async def get(
        self, session: AsyncSession, tenant_id: uuid.UUID, snapshot_id: uuid.UUID
    ) -> MetricObservation:
        observation = await session.get(MetricObservation, snapshot_id)
        if observation is None:
            raise NotFoundError("decision_snapshot", str(snapshot_id))
        if observation.tenant_id != tenant_id:
            logger.warning(
                "ledger_cross_tenant_read",
                tenant_id=str(tenant_id),
                snapshot_id=str(snapshot_id),
            )
            raise CrossTenantAccessError("decision_snapshot", str(snapshot_id))
        return observation

    async def latest(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        metric_code: str,
        entity_id: Optional[str] = None,
        truth_level: Optional[TruthLevel] = None,
    ) -> Optional[MetricObservation]:
        """Current observation for a key: the one with the latest as_of."""
        stmt = (
            select(MetricObservation)
            .where(MetricObservation.tenant_id == tenant_id)
            .where(MetricObservation.metric_code == metric_code)
        )
        if entity_id is None:
            stmt = stmt.where(MetricObservation.entity_id.is_(None))
        else:
            stmt = stmt.where(MetricObservation.entity_id == entity_id)
        if truth_level is not None:
            stmt = stmt.where(MetricObservation.truth_level == truth_level.value)
        stmt = stmt.order_by(
            MetricObservation.as_of.desc(), MetricObservation.created_at.desc()
        ).limit(1)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    def explain(self, observation: MetricObservation) -> SnapshotExplanation:
        derived = observation.derived_from or {}
        return SnapshotExplanation(
            metric_code=observation.metric_code,
            value=observation.value,
            currency=observation.currency,
            truth_level=observation.truth_level,
            authority=observation.authority,
            confidence=observation.confidence,
            as_of=observation.as_of,
            evidence=derived.get("evidence") or [],
            assumptions=derived.get("assumptions") or [],
            sources=derived.get("sources") or [],
            formula=derived.get("formula"),
            notes=derived.get("notes"),
        )

    async def check_stale(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        metric_codes: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
    ) -> StaleCheckResponse:
        """Report metrics whose current observation is older than the threshold."""
        codes = list(metric_codes) if metric_codes else list(REQUIRED_CASH_METRICS)
        now = now or datetime.utcnow()
        threshold = timedelta(minutes=self.stale_minutes)

        stale: list[StaleMetric] = []
        missing: list[str] = []
        for code in codes:
            observation = await self.latest(session, tenant_id, code)
            if observation is None:
                missing.append(code)
                continue
            age = now - observation.as_of
            if age > threshold:
                stale.append(StaleMetric(
                    metric_code=code,
                    as_of=observation.as_of,
                    age_minutes=round(age.total_seconds() / 60, 1),
                ))

        return StaleCheckResponse(
            is_stale=bool(stale or missing),
            stale_metrics=stale,
            missing_metrics=missing,
            threshold_minutes=self.stale_minutes,
            checked_at=now,
        )

    async def lineage(
        self, session: AsyncSession, tenant_id: uuid.UUID, snapshot_id: uuid.UUID
    ) -> Sequence[MetricObservation]:
        """Walk supersedes_id back from an observation, newest first."""
        chain = [await self.get(session, tenant_id, snapshot_id)]
        seen = {snapshot_id}
        while chain[-1].supersedes_id is not None and len(chain) < MAX_LINEAGE_DEPTH:
            prior_id = chain[-1].supersedes_id
            if prior_id in seen:
                break
            seen.add(prior_id)
            chain.append(await self.get(session, tenant_id, prior_id))
        return chain
