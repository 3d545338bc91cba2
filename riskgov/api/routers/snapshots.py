"""
Decision Snapshots (Fact Ledger) API Endpoints.

POST /api/v1/decision-snapshots/snapshots           append an observation
GET  /api/v1/decision-snapshots/latest              current observation for a metric
GET  /api/v1/decision-snapshots/explain/{id}        formatted provenance
GET  /api/v1/decision-snapshots/check-stale         stale or missing metrics
GET  /api/v1/decision-snapshots/lineage/{id}        supersedes chain, newest first
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.api.deps import Role, ensure_same_tenant, get_db, get_tenant_id, get_user_id, require_role
from riskgov.errors import NotFoundError
from riskgov.ledger.schemas import (
    ExplainResponse,
    LineageResponse,
    SnapshotCreateRequest,
    SnapshotResponse,
    StaleCheckResponse,
)
from riskgov.ledger.service import FactLedger

router = APIRouter(prefix="/api/v1/decision-snapshots", tags=["decision-snapshots"])

_ledger = FactLedger()


@router.post(
    "/snapshots",
    response_model=SnapshotResponse,
    status_code=201,
    dependencies=[Depends(require_role(Role.ANALYST))],
)
async def create_snapshot(
    body: SnapshotCreateRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
):
    """Append-only: a correction is a new observation with supersedesId."""
    observation = await _ledger.append(db, tenant_id, body, created_by=user_id)
    return SnapshotResponse.model_validate(observation)


@router.get("/latest", response_model=SnapshotResponse, dependencies=[Depends(require_role(Role.VIEWER))])
async def latest(
    metric_code: str = Query(alias="metricCode", min_length=1),
    entity_id: Optional[str] = Query(default=None, alias="entityId"),
    tenant_id_param: Optional[uuid.UUID] = Query(default=None, alias="tenantId"),
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    ensure_same_tenant(tenant_id, tenant_id_param, "decision_snapshot")
    observation = await _ledger.latest(db, tenant_id, metric_code, entity_id=entity_id)
    if observation is None:
        raise NotFoundError("decision_snapshot", metric_code)
    return SnapshotResponse.model_validate(observation)


@router.get("/explain/{snapshot_id}", response_model=ExplainResponse, dependencies=[Depends(require_role(Role.VIEWER))])
async def explain(
    snapshot_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    observation = await _ledger.get(db, tenant_id, snapshot_id)
    return ExplainResponse(
        snapshot=SnapshotResponse.model_validate(observation),
        formatted=_ledger.explain(observation),
    )


@router.get("/check-stale", response_model=StaleCheckResponse, dependencies=[Depends(require_role(Role.VIEWER))])
async def check_stale(
    metric_code: Optional[list[str]] = Query(default=None, alias="metricCode"),
    tenant_id_param: Optional[uuid.UUID] = Query(default=None, alias="tenantId"),
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    ensure_same_tenant(tenant_id, tenant_id_param, "decision_snapshot")
    return await _ledger.check_stale(db, tenant_id, metric_codes=metric_code)


@router.get("/lineage/{snapshot_id}", response_model=LineageResponse, dependencies=[Depends(require_role(Role.VIEWER))])
async def lineage(
    snapshot_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    chain = await _ledger.lineage(db, tenant_id, snapshot_id)
    return LineageResponse(
        snapshot_id=snapshot_id,
        depth=len(chain),
        chain=[SnapshotResponse.model_validate(o) for o in chain],
    )
