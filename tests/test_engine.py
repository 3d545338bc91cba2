"""
Risk Appetite Engine Tests.

Covers:
- evaluate_all is read-only
- detect_and_enforce claims, enforces and records each new breach once
- rules whose metric cannot be resolved are skipped and reported
- recomputed metrics are written back as provisional RULE observations
"""

import pytest
import pytest_asyncio
from sqlalchemy import func, select, text

from riskgov.appetite import metrics
from riskgov.appetite.engine import RiskAppetiteEngine
from riskgov.db.models import AlertInstance, AuditEvent, BreachEvent, MetricObservation
from riskgov.errors import ValidationError


async def _count(db, model, **filters):
    stmt = select(func.count()).select_from(model)
    for column, value in filters.items():
        stmt = stmt.where(getattr(model, column) == value)
    return int((await db.execute(stmt)).scalar_one())


@pytest_asyncio.fixture
async def seeded(tenant_a, data, make_rule):
    """3% false-auto rate, no cash ledger entries."""
    await data.outcomes(tenant_a.id, "AUTO_CONFIRMED", 100)
    await data.outcomes(tenant_a.id, "FALSE_AUTO", 3)
    return await data.active_appetite(tenant_a.id, [
        make_rule("false_auto_rate", ">", 2, severity="high"),
        make_rule("auto_reconciliation_rate", "<", 50),
        make_rule("cash_runway_days", "<", 30, risk_domain="cash"),
        make_rule("open_exceptions", ">", 0, is_enabled=False),
    ])


class TestEvaluateAll:
    @pytest.mark.asyncio
    async def test_no_active_appetite(self, db, tenant_a):
        result = await RiskAppetiteEngine().evaluate_all(db, tenant_a.id)
        assert result.has_active_appetite is False
        assert result.evaluations == []

    @pytest.mark.asyncio
    async def test_evaluations_and_skips(self, db, tenant_a, seeded):
        result = await RiskAppetiteEngine().evaluate_all(db, tenant_a.id)

        assert result.has_active_appetite is True
        assert result.version == 1
        by_metric = {e.metric_code: e for e in result.evaluations}
        assert set(by_metric) == {"false_auto_rate", "auto_reconciliation_rate"}
        assert by_metric["false_auto_rate"].is_breached is True
        assert by_metric["false_auto_rate"].current_value == pytest.approx(3.0)
        assert by_metric["auto_reconciliation_rate"].is_breached is False
        assert result.breach_count == 1

        assert [s.metric_code for s in result.skipped] == ["cash_runway_days"]
        assert "no settled cash_runway" in result.skipped[0].reason

    @pytest.mark.asyncio
    async def test_has_no_side_effects(self, db, tenant_a, seeded):
        await RiskAppetiteEngine().evaluate_all(db, tenant_a.id)

        assert await _count(db, BreachEvent) == 0
        assert await _count(db, MetricObservation) == 0
        assert await _count(db, AlertInstance) == 0
        assert await _count(db, AuditEvent, action="RISK_BREACH_ENFORCEMENT") == 0


class TestDetectAndEnforce:
    @pytest.mark.asyncio
    async def test_no_active_appetite(self, db, tenant_a):
        result = await RiskAppetiteEngine().detect_and_enforce(db, tenant_a.id)
        assert result.detected is False
        assert result.reason == "No active risk appetite"

    @pytest.mark.asyncio
    async def test_alert_breach_end_to_end(self, db, tenant_a, seeded):
        result = await RiskAppetiteEngine().detect_and_enforce(db, tenant_a.id)

        assert result.detected is True
        assert len(result.new_breaches) == 1
        new = result.new_breaches[0]
        assert new.metric_code == "false_auto_rate"
        assert new.action == "ALERT"
        assert new.action_result.success is True

        breach = await db.get(BreachEvent, new.breach_id)
        assert breach.is_resolved is False
        assert breach.action_result["success"] is True
        assert breach.action_result["details"]["alertCreated"] is True

        assert await _count(db, AlertInstance) == 1
        assert await _count(db, AuditEvent, action="RISK_BREACH_ENFORCEMENT") == 1
        assert [s.metric_code for s in result.skipped] == ["cash_runway_days"]

    @pytest.mark.asyncio
    async def test_open_breach_is_not_duplicated(self, db, tenant_a, seeded):
        engine = RiskAppetiteEngine()
        first = await engine.detect_and_enforce(db, tenant_a.id)
        second = await engine.detect_and_enforce(db, tenant_a.id)

        assert len(first.new_breaches) == 1
        assert second.new_breaches == []
        assert await _count(db, BreachEvent) == 1
        assert await _count(db, AlertInstance) == 1

    @pytest.mark.asyncio
    async def test_ar_overdue_breach_recorded_once(self, db, tenant_a, data, make_rule):
        # 250 overdue of 1000 outstanding
        await data.invoices(tenant_a.id, [600, 400])
        await data.exceptions(tenant_a.id, [250])
        await data.active_appetite(tenant_a.id, [
            make_rule("ar_overdue_ratio", ">", 20, risk_domain="ar", severity="high", action_on_breach="ALERT"),
        ])
        engine = RiskAppetiteEngine()

        first = await engine.detect_and_enforce(db, tenant_a.id)
        assert len(first.new_breaches) == 1
        assert first.new_breaches[0].value == pytest.approx(25.0)

        breach = await db.get(BreachEvent, first.new_breaches[0].breach_id)
        assert breach.severity == "high"
        assert breach.action_taken == "ALERT"
        assert await _count(db, AlertInstance) == 1

        second = await engine.detect_and_enforce(db, tenant_a.id)
        assert second.new_breaches == []
        assert await _count(db, BreachEvent) == 1

    @pytest.mark.asyncio
    async def test_failed_recipe_does_not_abort_pass(self, db, tenant_a, data, make_rule, monkeypatch):
        async def _missing_table(ctx):
            await ctx.session.execute(text("SELECT * FROM missing_table"))

        monkeypatch.setitem(metrics._REGISTRY, "missing_table_metric", _missing_table)
        await data.outcomes(tenant_a.id, "AUTO_CONFIRMED", 100)
        await data.outcomes(tenant_a.id, "FALSE_AUTO", 3)
        await data.active_appetite(tenant_a.id, [
            make_rule("missing_table_metric", ">", 0),
            make_rule("false_auto_rate", ">", 2),
        ])

        result = await RiskAppetiteEngine().detect_and_enforce(db, tenant_a.id)

        assert [s.metric_code for s in result.skipped] == ["missing_table_metric"]
        assert result.skipped[0].reason.startswith("query failed")
        assert [b.metric_code for b in result.new_breaches] == ["false_auto_rate"]
        assert await _count(db, BreachEvent) == 1

    @pytest.mark.asyncio
    async def test_breach_reopens_after_resolution(self, db, tenant_a, seeded):
        engine = RiskAppetiteEngine()
        first = await engine.detect_and_enforce(db, tenant_a.id)
        await engine.recorder.resolve(db, tenant_a.id, first.new_breaches[0].breach_id, resolved_by="m-1")

        again = await engine.detect_and_enforce(db, tenant_a.id)
        assert len(again.new_breaches) == 1
        assert await _count(db, BreachEvent) == 2

    @pytest.mark.asyncio
    async def test_recomputed_metrics_recorded_as_provisional(self, db, tenant_a, seeded):
        await RiskAppetiteEngine().detect_and_enforce(db, tenant_a.id)

        result = await db.execute(select(MetricObservation).order_by(MetricObservation.metric_code))
        observations = result.scalars().all()
        assert [o.metric_code for o in observations] == ["auto_reconciliation_rate", "false_auto_rate"]
        for o in observations:
            assert o.truth_level == "provisional"
            assert o.authority == "RULE"
            assert o.confidence == 75.0
            assert o.created_by == "system"

    @pytest.mark.asyncio
    async def test_recording_can_be_disabled(self, db, tenant_a, seeded):
        await RiskAppetiteEngine(record_resolved_metrics=False).detect_and_enforce(db, tenant_a.id)
        assert await _count(db, MetricObservation) == 0

    @pytest.mark.asyncio
    async def test_ledger_backed_metrics_not_rewritten(self, db, tenant_a, data, make_rule):
        await data.settled(tenant_a.id, "cash_runway", 12)
        await data.active_appetite(tenant_a.id, [
            make_rule("cash_runway_days", "<", 30, risk_domain="cash", action_on_breach="ESCALATE_TO_BOARD"),
        ])

        result = await RiskAppetiteEngine().detect_and_enforce(db, tenant_a.id)
        assert result.new_breaches[0].action == "ESCALATE_TO_BOARD"
        # Only the settled BANK row; cash values are never recomputed
        assert await _count(db, MetricObservation) == 1

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, db, tenant_a, tenant_b, seeded):
        result = await RiskAppetiteEngine().detect_and_enforce(db, tenant_b.id)
        assert result.detected is False
        assert await _count(db, BreachEvent) == 0


class TestImpactPreview:
    @pytest.mark.asyncio
    async def test_would_breach(self, db, tenant_a, seeded):
        engine = RiskAppetiteEngine()
        tighter = await engine.impact_preview(db, tenant_a.id, "false_auto_rate", 1, ">")
        looser = await engine.impact_preview(db, tenant_a.id, "false_auto_rate", 10, ">")

        assert tighter.would_breach is True
        assert looser.would_breach is False
        assert tighter.current_value == pytest.approx(3.0)

    @pytest.mark.asyncio
    async def test_unresolvable_metric(self, db, tenant_a):
        with pytest.raises(ValidationError) as exc:
            await RiskAppetiteEngine().impact_preview(db, tenant_a.id, "cash_runway_days", 30, "<")
        assert exc.value.field == "metricCode"
