"""
Board Scenario Simulator Tests.
"""

import pytest
import pytest_asyncio

from riskgov.appetite.engine import RiskAppetiteEngine
from riskgov.db.models import BoardScenario, BreachEvent, MetricObservation
from riskgov.errors import CrossTenantAccessError, ValidationError
from riskgov.simulation.board_scenarios import MAX_RUNWAY_DAYS, ScenarioProjector, runway_days
from riskgov.simulation.schemas import BoardScenarioRequest, ScenarioAssumptions, ScenarioType


def _request(scenario_type="REVENUE_SHOCK", name=None, **assumptions):
    return BoardScenarioRequest(
        scenario_name=name or f"{scenario_type} test",
        scenario_type=scenario_type,
        assumptions=ScenarioAssumptions(**assumptions),
    )


def _outcome(result, metric_code):
    return next(o for o in result.projected_outcomes if o.metric_code == metric_code)


@pytest_asyncio.fixture
async def business(tenant_a, data):
    """1M cash, 1M monthly revenue, 900k costs, 100k of 1M AR overdue, 80% auto."""
    await data.settled(tenant_a.id, "cash_today", 1_000_000)
    await data.invoices(tenant_a.id, [400_000, 600_000])
    await data.bills(tenant_a.id, [900_000])
    await data.exceptions(tenant_a.id, [100_000])
    await data.outcomes(tenant_a.id, "AUTO_CONFIRMED", 80)
    await data.outcomes(tenant_a.id, "MANUAL_CONFIRMED", 20)


class TestRunway:
    def test_burning_business(self):
        assert runway_days(cash=300, revenue=0, costs=100) == 90

    def test_not_burning_is_capped(self):
        assert runway_days(cash=100, revenue=1000, costs=100) == MAX_RUNWAY_DAYS


class TestProjection:
    @pytest.mark.asyncio
    async def test_baseline(self, db, tenant_a, business):
        baseline = await ScenarioProjector().baseline(db, tenant_a.id)
        assert baseline.cash_position == 1_000_000
        assert baseline.monthly_revenue == 1_000_000
        assert baseline.monthly_costs == 900_000
        assert baseline.ar_outstanding == 1_000_000
        assert baseline.ar_overdue == 100_000
        assert baseline.auto_reconciliation_rate == pytest.approx(80.0)

    @pytest.mark.asyncio
    async def test_revenue_shock(self, db, tenant_a, business):
        result = await ScenarioProjector().simulate(db, tenant_a.id, _request(revenue_change=-50))

        cash = _outcome(result, "cash_position")
        assert cash.projected == pytest.approx(450_000)
        assert cash.delta_percent == pytest.approx(-55.0)

        runway = _outcome(result, "cash_runway_days")
        assert runway.baseline == 150
        assert runway.projected == 25
        assert result.truth_level == "simulated"
        assert result.is_simulation is True

    @pytest.mark.asyncio
    async def test_ar_delay_projects_overdue_ratio(self, db, tenant_a, business):
        result = await ScenarioProjector().simulate(db, tenant_a.id, _request("AR_DELAY", ar_delay_days=30))

        assert _outcome(result, "ar_overdue_amount").projected == pytest.approx(400_000)
        ratio = _outcome(result, "ar_overdue_ratio")
        assert ratio.baseline == pytest.approx(10.0)
        assert ratio.projected == pytest.approx(40.0)

    @pytest.mark.asyncio
    async def test_cost_inflation(self, db, tenant_a, business):
        result = await ScenarioProjector().simulate(
            db, tenant_a.id, _request("COST_INFLATION", cost_inflation=10)
        )
        assert _outcome(result, "monthly_costs").projected == pytest.approx(990_000)

    @pytest.mark.asyncio
    async def test_automation_pause(self, db, tenant_a, business):
        result = await ScenarioProjector().simulate(db, tenant_a.id, _request("AUTOMATION_PAUSE"))

        assert _outcome(result, "auto_reconciliation_rate").projected == 0
        assert result.control_impacts.automation_affected is True

    @pytest.mark.asyncio
    async def test_custom_factors(self, db, tenant_a, business):
        result = await ScenarioProjector().simulate(
            db, tenant_a.id, _request("CUSTOM", custom_factors={"monthlyCosts": 2})
        )
        assert _outcome(result, "monthly_costs").projected == pytest.approx(1_800_000)

    @pytest.mark.asyncio
    async def test_unknown_custom_factor_rejected(self, db, tenant_a, business):
        with pytest.raises(ValidationError) as exc:
            await ScenarioProjector().simulate(
                db, tenant_a.id, _request("CUSTOM", custom_factors={"headcount": 1.1})
            )
        assert exc.value.field == "assumptions.customFactors"


class TestRuleChecks:
    @pytest.mark.asyncio
    async def test_projected_breach_is_simulated(self, db, tenant_a, business, data, make_rule):
        await data.active_appetite(tenant_a.id, [
            make_rule("cash_runway_days", "<", 30, risk_domain="cash", severity="critical"),
            make_rule("false_auto_rate", ">", 5),
        ])

        result = await ScenarioProjector().simulate(db, tenant_a.id, _request(revenue_change=-50))

        assert len(result.risk_breaches) == 1
        breach = result.risk_breaches[0]
        assert breach.metric_code == "cash_runway_days"
        assert breach.projected_value == 25
        assert breach.truth_level == "simulated"
        assert result.control_impacts.manual_review_required is True
        assert result.control_impacts.approval_volume_change == "increased"

    @pytest.mark.asyncio
    async def test_no_appetite_means_no_breaches(self, db, tenant_a, business):
        result = await ScenarioProjector().simulate(db, tenant_a.id, _request(revenue_change=-50))
        assert result.risk_breaches == []
        assert result.control_impacts.approval_volume_change == "unchanged"

    @pytest.mark.asyncio
    async def test_nothing_flows_into_ledger_or_breaches(self, db, tenant_a, business, data, make_rule):
        await data.active_appetite(tenant_a.id, [
            make_rule("cash_runway_days", "<", 30, risk_domain="cash"),
            make_rule("ar_overdue_ratio", ">", 5, risk_domain="receivables"),
        ])
        # A live open breach (ar_overdue_ratio = 10%) before projecting
        detected = await RiskAppetiteEngine().detect_and_enforce(db, tenant_a.id)
        await db.commit()
        assert [b.metric_code for b in detected.new_breaches] == ["ar_overdue_ratio"]
        observations_before = await data.count(MetricObservation)
        breaches_before = await data.count(BreachEvent)

        result = await ScenarioProjector().simulate(db, tenant_a.id, _request(revenue_change=-50))
        await db.commit()

        assert {b.metric_code for b in result.risk_breaches} == {"cash_runway_days", "ar_overdue_ratio"}
        assert await data.count(MetricObservation) == observations_before
        assert await data.count(BreachEvent) == breaches_before == 1
        assert await data.count(BoardScenario, tenant_a.id) == 1


class TestScenarioManagement:
    def test_templates(self):
        templates = ScenarioProjector().templates()
        assert [t.id for t in templates] == [
            ScenarioType.REVENUE_SHOCK,
            ScenarioType.AR_DELAY,
            ScenarioType.COST_INFLATION,
            ScenarioType.AUTOMATION_PAUSE,
        ]

    @pytest.mark.asyncio
    async def test_compare(self, db, tenant_a, business):
        projector = ScenarioProjector()
        mild = await projector.simulate(db, tenant_a.id, _request(name="Mild", revenue_change=-10))
        severe = await projector.simulate(db, tenant_a.id, _request(name="Severe", revenue_change=-50))

        comparison = await projector.compare(db, tenant_a.id, [mild.scenario_id, severe.scenario_id])
        assert [s.name for s in comparison.scenarios] == ["Mild", "Severe"]
        row = comparison.comparison["Monthly Revenue"]
        assert row == {"baseline": 1_000_000, "Mild": 900_000, "Severe": 500_000}

    @pytest.mark.asyncio
    async def test_compare_needs_two(self, db, tenant_a, business):
        projector = ScenarioProjector()
        only = await projector.simulate(db, tenant_a.id, _request())
        with pytest.raises(ValidationError) as exc:
            await projector.compare(db, tenant_a.id, [only.scenario_id])
        assert exc.value.field == "ids"

    @pytest.mark.asyncio
    async def test_archive_hides_from_list(self, db, tenant_a, business):
        projector = ScenarioProjector()
        keep = await projector.simulate(db, tenant_a.id, _request(name="Keep"))
        drop = await projector.simulate(db, tenant_a.id, _request(name="Drop"))

        await projector.archive(db, tenant_a.id, drop.scenario_id)

        visible = await projector.list_scenarios(db, tenant_a.id)
        assert [s.id for s in visible] == [keep.scenario_id]
        assert len(await projector.list_scenarios(db, tenant_a.id, include_archived=True)) == 2

    @pytest.mark.asyncio
    async def test_cross_tenant_get(self, db, tenant_a, tenant_b, business):
        result = await ScenarioProjector().simulate(db, tenant_a.id, _request())
        with pytest.raises(CrossTenantAccessError):
            await ScenarioProjector().get(db, tenant_b.id, result.scenario_id)
