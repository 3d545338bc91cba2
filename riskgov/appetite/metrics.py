"""
Metric Resolver.

Each metric code maps to a recipe registered with @register_metric. A
recipe reads operational tables for one tenant and returns a MetricValue
carrying its formula and sources. Policy:
- window-based metrics use a fixed trailing lookback (METRIC_LOOKBACK_DAYS)
- a zero denominator yields 0, never NaN or an error
- an unknown code, a failed query, a timeout, or missing source data is
  a resolution failure: resolve() returns None and the caller skips the rule
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.appetite.schemas import MetricValue
from riskgov.config import settings
from riskgov.db import queries
from riskgov.errors import MetricResolutionError
from riskgov.ledger.schemas import TruthLevel
from riskgov.ledger.service import FactLedger

logger = structlog.get_logger(__name__)


@dataclass
class MetricContext:
    session: AsyncSession
    tenant_id: uuid.UUID
    ledger: FactLedger
    lookback_days: int
    now: datetime = field(default_factory=datetime.utcnow)

    @property
    def window_start(self) -> datetime:
        return self.now - timedelta(days=self.lookback_days)


MetricRecipe = Callable[[MetricContext], Awaitable[MetricValue]]

_REGISTRY: dict[str, MetricRecipe] = {}


def register_metric(code: str) -> Callable[[MetricRecipe], MetricRecipe]:
    """Register a recipe under a metric code."""
    if code in _REGISTRY:
        raise ValueError(f"metric already registered: {code}")

    def decorator(recipe: MetricRecipe) -> MetricRecipe:
        _REGISTRY[code] = recipe
        return recipe
    return decorator


def registered_metrics() -> list[str]:
    return sorted(_REGISTRY)


def get_recipe(code: str) -> Optional[MetricRecipe]:
    return _REGISTRY.get(code)


def _ratio(numerator: float, denominator: float) -> float:
    """Percentage with the zero-denominator guard."""
    if not denominator:
        return 0.0
    return numerator / denominator * 100


class MetricResolver:
    """Resolves metric codes to current values for a tenant."""

    def __init__(
        self,
        ledger: Optional[FactLedger] = None,
        lookback_days: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.ledger = ledger or FactLedger()
        self.lookback_days = lookback_days or settings.metric_lookback_days
        self.timeout_seconds = timeout_seconds or settings.metric_timeout_seconds

    async def resolve(
        self, session: AsyncSession, tenant_id: uuid.UUID, metric_code: str
    ) -> Optional[MetricValue]:
        """Resolve a metric, or None when it cannot be resolved."""
        try:
            return await self.resolve_or_raise(session, tenant_id, metric_code)
        except MetricResolutionError as e:
            logger.warning(
                "metric_resolution_failed",
                tenant_id=str(tenant_id),
                metric_code=metric_code,
                reason=e.reason,
            )
            return None

    async def resolve_or_raise(
        self, session: AsyncSession, tenant_id: uuid.UUID, metric_code: str
    ) -> MetricValue:
        recipe = get_recipe(metric_code)
        if recipe is None:
            raise MetricResolutionError(metric_code, "unknown metric code")

        ctx = MetricContext(
            session=session,
            tenant_id=tenant_id,
            ledger=self.ledger,
            lookback_days=self.lookback_days,
        )
        # One savepoint per recipe; a failed statement rolls back only this recipe
        try:
            async with session.begin_nested():
                return await asyncio.wait_for(recipe(ctx), timeout=self.timeout_seconds)
        except MetricResolutionError:
            raise
        except asyncio.TimeoutError as e:
            raise MetricResolutionError(metric_code, f"timed out after {self.timeout_seconds}s") from e
        except Exception as e:
            raise MetricResolutionError(metric_code, f"query failed: {e}") from e


# ── Receivables ──────────────────────────────────────────────────────────


@register_metric("ar_overdue_ratio")
async def _ar_overdue_ratio(ctx: MetricContext) -> MetricValue:
    overdue = await queries.sum_open_exception_impact(ctx.session, ctx.tenant_id, "AR_OVERDUE")
    outstanding = await queries.sum_outstanding_invoices(ctx.session, ctx.tenant_id)
    return MetricValue(
        code="ar_overdue_ratio",
        value=_ratio(overdue, outstanding),
        source="exceptions_queue + invoices",
        formula="sum(open AR_OVERDUE impact) / sum(sent+overdue invoice totals) * 100",
        sources=["exceptions_queue", "invoices"],
        evidence=[{"arOverdue": overdue, "arOutstanding": outstanding}],
    )


@register_metric("ar_overdue_amount")
async def _ar_overdue_amount(ctx: MetricContext) -> MetricValue:
    overdue = await queries.sum_open_exception_impact(ctx.session, ctx.tenant_id, "AR_OVERDUE")
    return MetricValue(
        code="ar_overdue_amount",
        value=overdue,
        source="exceptions_queue",
        formula="sum(open AR_OVERDUE impact)",
        sources=["exceptions_queue"],
    )


# ── Cash (read from the ledger, never recomputed) ────────────────────────


async def _settled_ledger_value(ctx: MetricContext, code: str, ledger_code: str) -> MetricValue:
    observation = await ctx.ledger.latest(
        ctx.session, ctx.tenant_id, ledger_code, truth_level=TruthLevel.SETTLED
    )
    if observation is None:
        raise MetricResolutionError(code, f"no settled {ledger_code} observation")
    return MetricValue(
        code=code,
        value=observation.value,
        source="decision_snapshots",
        formula=f"latest settled {ledger_code}",
        sources=["decision_snapshots"],
        evidence=[{"snapshotId": str(observation.id), "asOf": observation.as_of.isoformat()}],
        from_ledger=True,
    )


@register_metric("cash_runway_days")
async def _cash_runway_days(ctx: MetricContext) -> MetricValue:
    return await _settled_ledger_value(ctx, "cash_runway_days", "cash_runway")


@register_metric("cash_position")
async def _cash_position(ctx: MetricContext) -> MetricValue:
    return await _settled_ledger_value(ctx, "cash_position", "cash_today")


# ── Reconciliation automation ────────────────────────────────────────────


@register_metric("false_auto_rate")
async def _false_auto_rate(ctx: MetricContext) -> MetricValue:
    since = ctx.window_start
    auto_confirmed = await queries.count_outcomes(ctx.session, ctx.tenant_id, since, "AUTO_CONFIRMED")
    false_auto = await queries.count_outcomes(ctx.session, ctx.tenant_id, since, "FALSE_AUTO")
    return MetricValue(
        code="false_auto_rate",
        value=_ratio(false_auto, auto_confirmed),
        source="reconciliation_suggestion_outcomes",
        formula=f"FALSE_AUTO / AUTO_CONFIRMED * 100 over {ctx.lookback_days}d",
        sources=["reconciliation_suggestion_outcomes"],
        evidence=[{"falseAuto": false_auto, "autoConfirmed": auto_confirmed}],
    )


@register_metric("auto_reconciliation_rate")
async def _auto_reconciliation_rate(ctx: MetricContext) -> MetricValue:
    since = ctx.window_start
    total = await queries.count_outcomes(ctx.session, ctx.tenant_id, since)
    auto_confirmed = await queries.count_outcomes(ctx.session, ctx.tenant_id, since, "AUTO_CONFIRMED")
    return MetricValue(
        code="auto_reconciliation_rate",
        value=_ratio(auto_confirmed, total),
        source="reconciliation_suggestion_outcomes",
        formula=f"AUTO_CONFIRMED / all outcomes * 100 over {ctx.lookback_days}d",
        sources=["reconciliation_suggestion_outcomes"],
        evidence=[{"autoConfirmed": auto_confirmed, "total": total}],
    )


@register_metric("guardrail_block_rate")
async def _guardrail_block_rate(ctx: MetricContext) -> MetricValue:
    since = ctx.window_start
    blocked = await queries.count_guardrail_events(ctx.session, ctx.tenant_id, since, "BLOCKED")
    total = await queries.count_outcomes(ctx.session, ctx.tenant_id, since)
    return MetricValue(
        code="guardrail_block_rate",
        value=_ratio(blocked, total),
        source="reconciliation_guardrail_events",
        formula=f"BLOCKED guardrail events / all outcomes * 100 over {ctx.lookback_days}d",
        sources=["reconciliation_guardrail_events", "reconciliation_suggestion_outcomes"],
        evidence=[{"blocked": blocked, "total": total}],
    )


# ── ML ───────────────────────────────────────────────────────────────────


@register_metric("ml_accuracy")
async def _ml_accuracy(ctx: MetricContext) -> MetricValue:
    snapshot = await queries.get_latest_ml_performance(ctx.session, ctx.tenant_id)
    if snapshot is None or snapshot.accuracy is None:
        raise MetricResolutionError("ml_accuracy", "no ML performance snapshot")
    return MetricValue(
        code="ml_accuracy",
        value=float(snapshot.accuracy),
        source="ml_performance_snapshots",
        formula="latest snapshot accuracy",
        sources=["ml_performance_snapshots"],
    )


@register_metric("calibration_error")
async def _calibration_error(ctx: MetricContext) -> MetricValue:
    snapshot = await queries.get_latest_ml_performance(ctx.session, ctx.tenant_id)
    if snapshot is None or snapshot.calibration_error is None:
        raise MetricResolutionError("calibration_error", "no ML performance snapshot")
    return MetricValue(
        code="calibration_error",
        value=float(snapshot.calibration_error),
        source="ml_performance_snapshots",
        formula="latest snapshot calibration_error",
        sources=["ml_performance_snapshots"],
    )


@register_metric("drift_signal_count")
async def _drift_signal_count(ctx: MetricContext) -> MetricValue:
    count = await queries.count_drift_signals(ctx.session, ctx.tenant_id, ("high", "critical"))
    return MetricValue(
        code="drift_signal_count",
        value=float(count),
        source="ml_drift_signals",
        formula="count(drift signals with severity high|critical)",
        sources=["ml_drift_signals"],
    )


# ── Operations ───────────────────────────────────────────────────────────


@register_metric("pending_approvals")
async def _pending_approvals(ctx: MetricContext) -> MetricValue:
    count = await queries.count_pending_approvals(ctx.session, ctx.tenant_id)
    return MetricValue(
        code="pending_approvals",
        value=float(count),
        source="approval_requests",
        formula="count(pending approval requests)",
        sources=["approval_requests"],
    )


@register_metric("open_exceptions")
async def _open_exceptions(ctx: MetricContext) -> MetricValue:
    count = await queries.count_open_exceptions(ctx.session, ctx.tenant_id)
    return MetricValue(
        code="open_exceptions",
        value=float(count),
        source="exceptions_queue",
        formula="count(open exceptions)",
        sources=["exceptions_queue"],
    )
