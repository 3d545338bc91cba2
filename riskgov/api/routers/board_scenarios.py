"""
Board Scenario API Endpoints.

POST /api/v1/board-scenarios/simulate         project a scenario and check it against the appetite
GET  /api/v1/board-scenarios/list             saved scenarios
GET  /api/v1/board-scenarios/templates        default assumptions per scenario type
GET  /api/v1/board-scenarios/compare?ids=a,b  metric x scenario matrix
POST /api/v1/board-scenarios/archive          hide a scenario from the list
GET  /api/v1/board-scenarios/{scenario_id}    one scenario

All outputs are simulated and labelled truthLevel "simulated".
"""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.api.deps import Role, get_db, get_tenant_id, get_user_id, require_role
from riskgov.errors import ValidationError
from riskgov.simulation.board_scenarios import ScenarioProjector
from riskgov.simulation.schemas import (
    ArchiveScenarioRequest,
    BoardScenarioList,
    BoardScenarioRecord,
    BoardScenarioRequest,
    BoardScenarioResult,
    ScenarioComparison,
    ScenarioTemplateList,
)

router = APIRouter(prefix="/api/v1/board-scenarios", tags=["board-scenarios"])

_projector = ScenarioProjector()


def _parse_ids(raw: str) -> list[uuid.UUID]:
    try:
        return [uuid.UUID(part.strip()) for part in raw.split(",") if part.strip()]
    except ValueError as e:
        raise ValidationError("ids must be comma-separated UUIDs", field="ids") from e


@router.post("/simulate", response_model=BoardScenarioResult, dependencies=[Depends(require_role(Role.ANALYST))])
async def simulate(
    body: BoardScenarioRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
):
    return await _projector.simulate(db, tenant_id, body, created_by=user_id)


@router.get("/list", response_model=BoardScenarioList, dependencies=[Depends(require_role(Role.VIEWER))])
async def list_scenarios(
    archived: bool = Query(default=False),
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    scenarios = await _projector.list_scenarios(db, tenant_id, include_archived=archived)
    return BoardScenarioList(scenarios=[BoardScenarioRecord.model_validate(s) for s in scenarios])


@router.get("/templates", response_model=ScenarioTemplateList, dependencies=[Depends(require_role(Role.VIEWER))])
async def templates():
    return ScenarioTemplateList(templates=_projector.templates())


@router.get("/compare", response_model=ScenarioComparison, dependencies=[Depends(require_role(Role.VIEWER))])
async def compare(
    ids: str = Query(min_length=1),
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    return await _projector.compare(db, tenant_id, _parse_ids(ids))


@router.post("/archive", response_model=BoardScenarioRecord, dependencies=[Depends(require_role(Role.MANAGER))])
async def archive(
    body: ArchiveScenarioRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    return BoardScenarioRecord.model_validate(await _projector.archive(db, tenant_id, body.scenario_id))


@router.get("/{scenario_id}", response_model=BoardScenarioRecord, dependencies=[Depends(require_role(Role.VIEWER))])
async def get_scenario(
    scenario_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    return BoardScenarioRecord.model_validate(await _projector.get(db, tenant_id, scenario_id))
