"""
Risk Appetite API Endpoints.

GET  /api/v1/risk-appetite/evaluate                        evaluate rules, no side effects
POST /api/v1/risk-appetite/detect                          evaluate, record breaches, enforce
GET  /api/v1/risk-appetite/breaches                        list breach events
POST /api/v1/risk-appetite/resolve                         resolve a breach
GET  /api/v1/risk-appetite/impact-preview                  would a proposed threshold breach?
GET  /api/v1/risk-appetite/metrics                         registered metric codes
GET  /api/v1/risk-appetite/appetites                       all versions
POST /api/v1/risk-appetite/appetites                       create a draft
GET  /api/v1/risk-appetite/appetites/active                the active appetite
POST /api/v1/risk-appetite/appetites/{appetite_id}/activate
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.api.deps import Role, ensure_same_tenant, get_db, get_tenant_id, get_user_id, require_role
from riskgov.appetite.engine import RiskAppetiteEngine
from riskgov.appetite.metrics import registered_metrics
from riskgov.appetite.schemas import (
    AppetiteCreateRequest,
    AppetiteListResponse,
    AppetiteResponse,
    BreachListResponse,
    BreachResponse,
    DetectResult,
    EvaluationResult,
    ImpactPreview,
    MetricCatalogResponse,
    Operator,
    ResolveBreachRequest,
)
from riskgov.errors import NotFoundError

router = APIRouter(prefix="/api/v1/risk-appetite", tags=["risk-appetite"])

_engine = RiskAppetiteEngine()


@router.get("/evaluate", response_model=EvaluationResult, dependencies=[Depends(require_role(Role.VIEWER))])
async def evaluate(
    tenant_id_param: Optional[uuid.UUID] = Query(default=None, alias="tenantId"),
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    """Evaluate every enabled rule of the active appetite. Writes nothing."""
    ensure_same_tenant(tenant_id, tenant_id_param, "risk_appetite")
    return await _engine.evaluate_all(db, tenant_id)


@router.post("/detect", response_model=DetectResult, dependencies=[Depends(require_role(Role.ANALYST))])
async def detect(
    tenant_id_param: Optional[uuid.UUID] = Query(default=None, alias="tenantId"),
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    """Record new breaches and run their enforcement actions."""
    ensure_same_tenant(tenant_id, tenant_id_param, "risk_appetite")
    return await _engine.detect_and_enforce(db, tenant_id)


@router.get("/breaches", response_model=BreachListResponse, dependencies=[Depends(require_role(Role.VIEWER))])
async def list_breaches(
    unresolved: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=500),
    tenant_id_param: Optional[uuid.UUID] = Query(default=None, alias="tenantId"),
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    ensure_same_tenant(tenant_id, tenant_id_param, "risk_breach_event")
    breaches = await _engine.recorder.list_breaches(db, tenant_id, unresolved_only=unresolved, limit=limit)
    return BreachListResponse(breaches=[BreachResponse.model_validate(b) for b in breaches])


@router.post("/resolve", response_model=BreachResponse, dependencies=[Depends(require_role(Role.MANAGER))])
async def resolve_breach(
    body: ResolveBreachRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
):
    breach = await _engine.recorder.resolve(
        db, tenant_id, body.breach_id, notes=body.resolution, resolved_by=user_id
    )
    return BreachResponse.model_validate(breach)


@router.get("/impact-preview", response_model=ImpactPreview, dependencies=[Depends(require_role(Role.VIEWER))])
async def impact_preview(
    metric_code: str = Query(alias="metricCode", min_length=1),
    threshold: float = Query(),
    operator: Operator = Query(),
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    return await _engine.impact_preview(db, tenant_id, metric_code, threshold, operator)


@router.get("/metrics", response_model=MetricCatalogResponse, dependencies=[Depends(require_role(Role.VIEWER))])
async def list_metrics():
    return MetricCatalogResponse(metrics=registered_metrics())


# ── Governance ─────────────────────────────────────────────────────────


@router.get("/appetites", response_model=AppetiteListResponse, dependencies=[Depends(require_role(Role.VIEWER))])
async def list_appetites(
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    appetites = await _engine.governance.list_appetites(db, tenant_id)
    return AppetiteListResponse(appetites=[AppetiteResponse.model_validate(a) for a in appetites])


@router.post(
    "/appetites",
    response_model=AppetiteResponse,
    status_code=201,
    dependencies=[Depends(require_role(Role.ADMIN))],
)
async def create_appetite(
    body: AppetiteCreateRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
):
    appetite = await _engine.governance.create_draft(db, tenant_id, body, created_by=user_id)
    return AppetiteResponse.model_validate(appetite)


@router.get("/appetites/active", response_model=AppetiteResponse, dependencies=[Depends(require_role(Role.VIEWER))])
async def get_active_appetite(
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    appetite = await _engine.governance.get_active(db, tenant_id)
    if appetite is None:
        raise NotFoundError("risk_appetite", "active")
    return AppetiteResponse.model_validate(appetite)


@router.post(
    "/appetites/{appetite_id}/activate",
    response_model=AppetiteResponse,
    dependencies=[Depends(require_role(Role.ADMIN))],
)
async def activate_appetite(
    appetite_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
):
    appetite = await _engine.governance.activate(db, tenant_id, appetite_id, actor_id=user_id)
    return AppetiteResponse.model_validate(appetite)
