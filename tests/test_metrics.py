"""
Metric Resolver Tests.
"""

import asyncio

import pytest
from sqlalchemy import text

from riskgov.appetite import metrics
from riskgov.appetite.metrics import MetricResolver, registered_metrics
from riskgov.db.models import MLPerformanceSnapshot
from riskgov.errors import MetricResolutionError


class TestRegistry:
    def test_catalog_contains_core_metrics(self):
        codes = registered_metrics()
        for code in ("ar_overdue_ratio", "false_auto_rate", "cash_runway_days", "ml_accuracy"):
            assert code in codes

    def test_duplicate_registration_rejected(self):
        with pytest.raises(ValueError):
            metrics.register_metric("false_auto_rate")
        assert metrics.get_recipe("false_auto_rate").__name__ == "_false_auto_rate"


class TestRatios:
    @pytest.mark.asyncio
    async def test_zero_denominator_is_zero(self, db, tenant_a):
        value = await MetricResolver().resolve(db, tenant_a.id, "false_auto_rate")
        assert value is not None
        assert value.value == 0.0

    @pytest.mark.asyncio
    async def test_false_auto_rate(self, db, tenant_a, data):
        await data.outcomes(tenant_a.id, "AUTO_CONFIRMED", 100)
        await data.outcomes(tenant_a.id, "FALSE_AUTO", 3)

        value = await MetricResolver().resolve(db, tenant_a.id, "false_auto_rate")
        assert value.value == pytest.approx(3.0)
        assert value.source == "reconciliation_suggestion_outcomes"

    @pytest.mark.asyncio
    async def test_ar_overdue_ratio(self, db, tenant_a, data):
        await data.invoices(tenant_a.id, [600, 400])
        await data.invoices(tenant_a.id, [5000], status="paid")
        await data.exceptions(tenant_a.id, [150])
        await data.exceptions(tenant_a.id, [999], status="resolved")

        value = await MetricResolver().resolve(db, tenant_a.id, "ar_overdue_ratio")
        assert value.value == pytest.approx(15.0)
        assert value.evidence == [{"arOverdue": 150.0, "arOutstanding": 1000.0}]
        assert value.source == "exceptions_queue + invoices"

    @pytest.mark.asyncio
    async def test_tenant_isolation(self, db, tenant_a, tenant_b, data):
        await data.outcomes(tenant_b.id, "AUTO_CONFIRMED", 10)
        value = await MetricResolver().resolve(db, tenant_a.id, "auto_reconciliation_rate")
        assert value.value == 0.0


class TestLedgerBackedMetrics:
    @pytest.mark.asyncio
    async def test_cash_position_reads_settled_ledger(self, db, tenant_a, data):
        snapshot_id = await data.settled(tenant_a.id, "cash_today", 2_500_000)

        value = await MetricResolver().resolve(db, tenant_a.id, "cash_position")
        assert value.value == 2_500_000
        assert value.from_ledger is True
        assert value.evidence[0]["snapshotId"] == str(snapshot_id)

    @pytest.mark.asyncio
    async def test_missing_ledger_entry_is_unresolvable(self, db, tenant_a):
        assert await MetricResolver().resolve(db, tenant_a.id, "cash_runway_days") is None

    @pytest.mark.asyncio
    async def test_ml_metric_without_snapshot_is_unresolvable(self, db, tenant_a):
        with pytest.raises(MetricResolutionError) as exc:
            await MetricResolver().resolve_or_raise(db, tenant_a.id, "ml_accuracy")
        assert "no ML performance snapshot" in exc.value.reason

    @pytest.mark.asyncio
    async def test_ml_accuracy_from_latest_snapshot(self, db, tenant_a, session_factory):
        async with session_factory() as session:
            session.add(MLPerformanceSnapshot(tenant_id=tenant_a.id, accuracy=91.5, calibration_error=0.04))
            await session.commit()

        value = await MetricResolver().resolve(db, tenant_a.id, "ml_accuracy")
        assert value.value == 91.5


class TestFailures:
    @pytest.mark.asyncio
    async def test_unknown_code(self, db, tenant_a):
        with pytest.raises(MetricResolutionError) as exc:
            await MetricResolver().resolve_or_raise(db, tenant_a.id, "nonexistent_metric")
        assert exc.value.reason == "unknown metric code"

    @pytest.mark.asyncio
    async def test_timeout_is_resolution_failure(self, db, tenant_a, monkeypatch):
        async def _slow(ctx):
            await asyncio.sleep(5)

        monkeypatch.setitem(metrics._REGISTRY, "slow_metric", _slow)
        resolver = MetricResolver(timeout_seconds=0.01)

        with pytest.raises(MetricResolutionError) as exc:
            await resolver.resolve_or_raise(db, tenant_a.id, "slow_metric")
        assert "timed out" in exc.value.reason
        assert await resolver.resolve(db, tenant_a.id, "slow_metric") is None

    @pytest.mark.asyncio
    async def test_query_error_is_resolution_failure(self, db, tenant_a, monkeypatch):
        async def _broken(ctx):
            raise RuntimeError("relation does not exist")

        monkeypatch.setitem(metrics._REGISTRY, "broken_metric", _broken)
        with pytest.raises(MetricResolutionError) as exc:
            await MetricResolver().resolve_or_raise(db, tenant_a.id, "broken_metric")
        assert exc.value.reason.startswith("query failed")

    @pytest.mark.asyncio
    async def test_failed_statement_leaves_session_usable(self, db, tenant_a, data, monkeypatch):
        async def _missing_table(ctx):
            await ctx.session.execute(text("SELECT * FROM missing_table"))

        monkeypatch.setitem(metrics._REGISTRY, "missing_table_metric", _missing_table)
        await data.outcomes(tenant_a.id, "AUTO_CONFIRMED", 10)
        resolver = MetricResolver()

        assert await resolver.resolve(db, tenant_a.id, "missing_table_metric") is None
        value = await resolver.resolve(db, tenant_a.id, "auto_reconciliation_rate")
        assert value is not None
        assert value.value == pytest.approx(100.0)
