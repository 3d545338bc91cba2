"""
Board Scenario Simulator.

Projects a macro shock (revenue change, AR delay, cost inflation,
automation pause) onto a baseline read from the ledger and operational
tables, then checks the projection against the active appetite's rules.

Every output is hypothetical and labelled truthLevel "simulated". A
scenario writes only its own board_scenarios row; nothing flows into the
Fact Ledger or breach events.
"""

import uuid
from datetime import datetime, timedelta
from typing import Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.appetite.evaluator import evaluate
from riskgov.appetite.governance import AppetiteGovernance
from riskgov.appetite.schemas import Operator, Severity
from riskgov.config import settings
from riskgov.db import queries
from riskgov.db.models import BoardScenario
from riskgov.errors import CrossTenantAccessError, NotFoundError, ValidationError
from riskgov.ledger.service import FactLedger
from riskgov.simulation.schemas import (
    Baseline,
    BoardScenarioRequest,
    BoardScenarioResult,
    ComparedScenario,
    ControlImpacts,
    ProjectedOutcome,
    ScenarioAssumptions,
    ScenarioComparison,
    ScenarioTemplate,
    ScenarioType,
    SimulatedBreach,
)

logger = structlog.get_logger(__name__)

# Share of revenue that converts to cash inside the month
CASH_CONVERSION_RATE = 0.7
# Share of outstanding AR that slips to overdue per 30 days of delay
AR_SLIPPAGE_RATE = 0.3
# Runway reported when the business is not burning cash
MAX_RUNWAY_DAYS = 365


TEMPLATES: list[ScenarioTemplate] = [
    ScenarioTemplate(
        id=ScenarioType.REVENUE_SHOCK,
        name="Revenue Shock",
        description="Revenue falls by a fixed percentage",
        default_assumptions={"revenueChange": -20},
    ),
    ScenarioTemplate(
        id=ScenarioType.AR_DELAY,
        name="AR Collection Delay",
        description="Customers pay later than their terms",
        default_assumptions={"arDelayDays": 30},
    ),
    ScenarioTemplate(
        id=ScenarioType.COST_INFLATION,
        name="Cost Inflation",
        description="Operating costs rise by a fixed percentage",
        default_assumptions={"costInflation": 15},
    ),
    ScenarioTemplate(
        id=ScenarioType.AUTOMATION_PAUSE,
        name="Automation Pause",
        description="Auto-reconciliation is switched off",
        default_assumptions={"automationPaused": True},
    ),
]


def runway_days(cash: float, revenue: float, costs: float) -> int:
    """Days of cash left at the monthly burn implied by revenue and costs."""
    burn = costs - revenue * CASH_CONVERSION_RATE
    if burn > 0:
        return round(cash / burn * 30)
    return MAX_RUNWAY_DAYS


def _delta_percent(baseline: float, projected: float) -> float:
    if not baseline:
        return 0.0
    return round((projected - baseline) / abs(baseline) * 100, 1)


def _apply_custom_factors(baseline: Baseline, factors: dict[str, float]) -> Baseline:
    """Multiply named baseline fields. Unknown names are rejected."""
    if not factors:
        return baseline
    by_name = {}
    for name, info in Baseline.model_fields.items():
        by_name[name] = name
        if info.alias:
            by_name[info.alias] = name
    unknown = sorted(k for k in factors if k not in by_name)
    if unknown:
        raise ValidationError(
            "customFactors reference unknown baseline fields",
            field="assumptions.customFactors",
            details={"unknown_fields": unknown},
        )
    values = baseline.model_dump()
    for key, factor in factors.items():
        values[by_name[key]] = values[by_name[key]] * factor
    return Baseline(**values)


class ScenarioProjector:
    def __init__(
        self,
        ledger: Optional[FactLedger] = None,
        governance: Optional[AppetiteGovernance] = None,
    ):
        self.ledger = ledger or FactLedger()
        self.governance = governance or AppetiteGovernance()

    async def baseline(self, session: AsyncSession, tenant_id: uuid.UUID) -> Baseline:
        since = datetime.utcnow() - timedelta(days=settings.metric_lookback_days)

        cash_today = await self.ledger.latest(session, tenant_id, "cash_today")
        cash_next7d = await self.ledger.latest(session, tenant_id, "cash_next_7d")
        total = await queries.count_outcomes(session, tenant_id, since)
        auto = await queries.count_outcomes(session, tenant_id, since, "AUTO_CONFIRMED")

        return Baseline(
            cash_position=cash_today.value if cash_today else 0.0,
            cash_next7d=cash_next7d.value if cash_next7d else 0.0,
            ar_outstanding=await queries.sum_outstanding_invoices(session, tenant_id),
            ar_overdue=await queries.sum_open_exception_impact(session, tenant_id, "AR_OVERDUE"),
            monthly_revenue=await queries.sum_invoices_since(session, tenant_id, since),
            monthly_costs=await queries.sum_bills_since(session, tenant_id, since),
            auto_reconciliation_rate=auto / total * 100 if total else 0.0,
        )

    def project(
        self, baseline: Baseline, assumptions: ScenarioAssumptions, automation_paused: bool
    ) -> tuple[list[ProjectedOutcome], dict[str, float]]:
        """
        Apply assumptions to the baseline.

        Returns the outcomes for display and the projected metric map used
        for rule checks, keyed by metric code.
        """
        base = _apply_custom_factors(baseline, assumptions.custom_factors)

        revenue = base.monthly_revenue * (1 + (assumptions.revenue_change or 0) / 100)
        costs = base.monthly_costs * (1 + (assumptions.cost_inflation or 0) / 100)
        overdue = base.ar_overdue
        if assumptions.ar_delay_days:
            overdue += assumptions.ar_delay_days / 30 * base.ar_outstanding * AR_SLIPPAGE_RATE
        cash = base.cash_position + revenue * CASH_CONVERSION_RATE - costs
        auto_rate = 0.0 if automation_paused else base.auto_reconciliation_rate

        base_runway = runway_days(base.cash_position, base.monthly_revenue, base.monthly_costs)
        projected_runway = runway_days(cash, revenue, costs)

        base_ratio = base.ar_overdue / base.ar_outstanding * 100 if base.ar_outstanding else 0.0
        projected_ratio = overdue / base.ar_outstanding * 100 if base.ar_outstanding else 0.0

        rows = [
            ("Cash Position", "cash_position", base.cash_position, cash, settings.default_currency),
            ("Cash Runway", "cash_runway_days", base_runway, projected_runway, "days"),
            ("Monthly Revenue", "monthly_revenue", base.monthly_revenue, revenue, settings.default_currency),
            ("Monthly Costs", "monthly_costs", base.monthly_costs, costs, settings.default_currency),
            ("AR Overdue", "ar_overdue_amount", base.ar_overdue, overdue, settings.default_currency),
            ("AR Overdue Ratio", "ar_overdue_ratio", base_ratio, projected_ratio, "%"),
            ("Auto-Reconciliation Rate", "auto_reconciliation_rate", base.auto_reconciliation_rate, auto_rate, "%"),
        ]
        outcomes = [
            ProjectedOutcome(
                metric=label,
                metric_code=code,
                baseline=round(b, 2),
                projected=round(p, 2),
                delta=round(p - b, 2),
                delta_percent=_delta_percent(b, p),
                unit=unit,
            )
            for label, code, b, p, unit in rows
        ]
        projected = {
            "cash_position": cash,
            "cash_runway_days": float(projected_runway),
            "ar_overdue_amount": overdue,
            "ar_overdue_ratio": projected_ratio,
            "auto_reconciliation_rate": auto_rate,
        }
        return outcomes, projected

    async def _check_rules(
        self, session: AsyncSession, tenant_id: uuid.UUID, projected: dict[str, float]
    ) -> list[SimulatedBreach]:
        appetite = await self.governance.get_active(session, tenant_id)
        if appetite is None:
            return []
        breaches = []
        for rule in appetite.rules:
            if not rule.is_enabled or rule.metric_code not in projected:
                continue
            value = projected[rule.metric_code]
            if evaluate(value, rule.operator, rule.threshold):
                breaches.append(SimulatedBreach(
                    metric_code=rule.metric_code,
                    metric_label=rule.metric_label or rule.metric_code,
                    operator=Operator(rule.operator),
                    threshold=rule.threshold,
                    projected_value=round(value, 2),
                    severity=Severity(rule.severity),
                ))
        return breaches

    async def simulate(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        request: BoardScenarioRequest,
        created_by: Optional[str] = None,
    ) -> BoardScenarioResult:
        assumptions = request.assumptions
        automation_paused = (
            assumptions.automation_paused or request.scenario_type == ScenarioType.AUTOMATION_PAUSE
        )

        baseline = await self.baseline(session, tenant_id)
        outcomes, projected = self.project(baseline, assumptions, automation_paused)
        breaches = await self._check_rules(session, tenant_id, projected)
        control_impacts = ControlImpacts(
            automation_affected=automation_paused,
            approval_volume_change="increased" if breaches else "unchanged",
            manual_review_required=any(b.severity == Severity.CRITICAL for b in breaches),
        )

        scenario = BoardScenario(
            tenant_id=tenant_id,
            scenario_name=request.scenario_name,
            scenario_type=request.scenario_type.value,
            description=request.description,
            assumptions=assumptions.model_dump(mode="json", by_alias=True),
            baseline_snapshot=baseline.model_dump(mode="json", by_alias=True),
            projected_outcomes=[o.model_dump(mode="json", by_alias=True) for o in outcomes],
            risk_breaches=[b.model_dump(mode="json", by_alias=True) for b in breaches],
            control_impacts=control_impacts.model_dump(mode="json", by_alias=True),
            created_by=created_by,
        )
        session.add(scenario)
        await session.flush()

        logger.info(
            "board_scenario_simulated",
            tenant_id=str(tenant_id),
            scenario_id=str(scenario.id),
            scenario_type=request.scenario_type.value,
            breaches=len(breaches),
        )
        return BoardScenarioResult(
            scenario_id=scenario.id,
            scenario_name=scenario.scenario_name,
            scenario_type=request.scenario_type,
            baseline=baseline,
            projected_outcomes=outcomes,
            risk_breaches=breaches,
            control_impacts=control_impacts,
            simulated_at=scenario.created_at or datetime.utcnow(),
        )

    async def list_scenarios(
        self, session: AsyncSession, tenant_id: uuid.UUID, include_archived: bool = False
    ) -> Sequence[BoardScenario]:
        stmt = select(BoardScenario).where(BoardScenario.tenant_id == tenant_id)
        if not include_archived:
            stmt = stmt.where(BoardScenario.is_archived.is_(False))
        result = await session.execute(stmt.order_by(BoardScenario.created_at.desc()))
        return result.scalars().all()

    def templates(self) -> list[ScenarioTemplate]:
        return list(TEMPLATES)

    async def get(
        self, session: AsyncSession, tenant_id: uuid.UUID, scenario_id: uuid.UUID
    ) -> BoardScenario:
        scenario = await session.get(BoardScenario, scenario_id)
        if scenario is None:
            raise NotFoundError("board_scenario", str(scenario_id))
        if scenario.tenant_id != tenant_id:
            logger.warning(
                "board_scenario_cross_tenant_access",
                tenant_id=str(tenant_id),
                scenario_id=str(scenario_id),
            )
            raise CrossTenantAccessError("board_scenario", str(scenario_id))
        return scenario

    async def compare(
        self, session: AsyncSession, tenant_id: uuid.UUID, scenario_ids: Sequence[uuid.UUID]
    ) -> ScenarioComparison:
        if len(scenario_ids) < 2:
            raise ValidationError("at least two scenarios are required", field="ids")

        scenarios = [await self.get(session, tenant_id, sid) for sid in scenario_ids]
        comparison: dict[str, dict[str, float]] = {}
        for scenario in scenarios:
            for outcome in scenario.projected_outcomes or []:
                row = comparison.setdefault(outcome["metric"], {"baseline": outcome["baseline"]})
                row[scenario.scenario_name] = outcome["projected"]

        return ScenarioComparison(
            scenarios=[
                ComparedScenario(
                    id=s.id,
                    name=s.scenario_name,
                    type=ScenarioType(s.scenario_type),
                    breach_count=len(s.risk_breaches or []),
                )
                for s in scenarios
            ],
            comparison=comparison,
        )

    async def archive(
        self, session: AsyncSession, tenant_id: uuid.UUID, scenario_id: uuid.UUID
    ) -> BoardScenario:
        scenario = await self.get(session, tenant_id, scenario_id)
        scenario.is_archived = True
        await session.flush()
        logger.info("board_scenario_archived", tenant_id=str(tenant_id), scenario_id=str(scenario_id))
        return scenario
