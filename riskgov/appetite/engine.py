"""
Risk Appetite Engine.

Orchestrates one evaluation pass for a tenant:
    active appetite → enabled rules → Metric Resolver → Rule Evaluator

evaluate_all() is a read-only query. detect_and_enforce() runs the same
pass and, for each newly breached rule, claims the open-breach slot,
dispatches the enforcement action and records its result. Rules are
processed strictly one after another so audit ordering is deterministic.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.appetite.breaches import BreachRecorder
from riskgov.appetite.enforcement import EnforcementDispatcher
from riskgov.appetite.evaluator import evaluate
from riskgov.appetite.governance import AppetiteGovernance
from riskgov.appetite.metrics import MetricResolver
from riskgov.appetite.schemas import (
    DetectResult,
    EnforcementAction,
    EvaluationResult,
    ImpactPreview,
    MetricValue,
    NewBreach,
    Operator,
    RuleEvaluation,
    SkippedRule,
)
from riskgov.config import settings
from riskgov.db.models import RiskAppetite, RiskAppetiteRule
from riskgov.errors import DuplicateBreachError, MetricResolutionError, ValidationError
from riskgov.ledger.schemas import Provenance
from riskgov.ledger.service import FactLedger

logger = structlog.get_logger(__name__)


@dataclass
class _RulePass:
    rule: RiskAppetiteRule
    metric: MetricValue
    is_breached: bool


class RiskAppetiteEngine:
    def __init__(
        self,
        resolver: Optional[MetricResolver] = None,
        dispatcher: Optional[EnforcementDispatcher] = None,
        recorder: Optional[BreachRecorder] = None,
        governance: Optional[AppetiteGovernance] = None,
        ledger: Optional[FactLedger] = None,
        record_resolved_metrics: Optional[bool] = None,
    ):
        self.ledger = ledger or FactLedger()
        self.resolver = resolver or MetricResolver(ledger=self.ledger)
        self.dispatcher = dispatcher or EnforcementDispatcher()
        self.recorder = recorder or BreachRecorder()
        self.governance = governance or AppetiteGovernance()
        self.record_resolved_metrics = (
            settings.record_resolved_metrics if record_resolved_metrics is None else record_resolved_metrics
        )

    async def _run_pass(
        self, session: AsyncSession, tenant_id: uuid.UUID, appetite: RiskAppetite
    ) -> tuple[list[_RulePass], list[SkippedRule], dict[str, MetricValue]]:
        passes: list[_RulePass] = []
        skipped: list[SkippedRule] = []
        resolved: dict[str, MetricValue] = {}
        failed: dict[str, str] = {}

        for rule in appetite.rules:
            if not rule.is_enabled:
                continue
            code = rule.metric_code
            if code not in resolved and code not in failed:
                try:
                    resolved[code] = await self.resolver.resolve_or_raise(session, tenant_id, code)
                except MetricResolutionError as e:
                    failed[code] = e.reason
                    logger.warning(
                        "rule_skipped",
                        tenant_id=str(tenant_id),
                        rule_id=str(rule.id),
                        metric_code=code,
                        reason=e.reason,
                    )
            if code in failed:
                skipped.append(SkippedRule(rule_id=rule.id, metric_code=code, reason=failed[code]))
                continue

            metric = resolved[code]
            passes.append(_RulePass(
                rule=rule,
                metric=metric,
                is_breached=evaluate(metric.value, rule.operator, rule.threshold),
            ))
        return passes, skipped, resolved

    async def evaluate_all(self, session: AsyncSession, tenant_id: uuid.UUID) -> EvaluationResult:
        """Evaluate every enabled rule of the active appetite. No side effects."""
        now = datetime.utcnow()
        appetite = await self.governance.get_active(session, tenant_id)
        if appetite is None:
            return EvaluationResult(has_active_appetite=False, evaluated_at=now)

        passes, skipped, _ = await self._run_pass(session, tenant_id, appetite)
        evaluations = [
            RuleEvaluation(
                rule_id=p.rule.id,
                domain=p.rule.risk_domain,
                metric_code=p.rule.metric_code,
                metric_label=p.rule.metric_label,
                current_value=p.metric.value,
                threshold=p.rule.threshold,
                operator=p.rule.operator,
                unit=p.rule.unit,
                is_breached=p.is_breached,
                severity=p.rule.severity,
                action_on_breach=p.rule.action_on_breach,
                source=p.metric.source,
            )
            for p in passes
        ]
        return EvaluationResult(
            has_active_appetite=True,
            appetite_id=appetite.id,
            version=appetite.version,
            name=appetite.name,
            evaluations=evaluations,
            skipped=skipped,
            breach_count=sum(1 for e in evaluations if e.is_breached),
            evaluated_at=now,
        )

    async def detect_and_enforce(self, session: AsyncSession, tenant_id: uuid.UUID) -> DetectResult:
        """Evaluate, then enforce and record every newly breached rule."""
        appetite = await self.governance.get_active(session, tenant_id)
        if appetite is None:
            return DetectResult(
                detected=False,
                reason="No active risk appetite",
                detected_at=datetime.utcnow(),
            )

        passes, skipped, resolved = await self._run_pass(session, tenant_id, appetite)

        if self.record_resolved_metrics:
            await self._record_observations(session, tenant_id, resolved)

        new_breaches: list[NewBreach] = []
        for p in passes:
            if not p.is_breached:
                continue
            rule = p.rule
            try:
                breach_id = await self.recorder.claim(session, tenant_id, rule, p.metric.value)
            except DuplicateBreachError:
                logger.debug("breach_already_open", tenant_id=str(tenant_id), rule_id=str(rule.id))
                continue

            action = EnforcementAction(rule.action_on_breach)
            action_result = await self.dispatcher.execute(session, tenant_id, action, rule, p.metric.value)
            await self.recorder.attach_action_result(session, breach_id, action_result)

            logger.warning(
                "breach_detected",
                tenant_id=str(tenant_id),
                breach_id=str(breach_id),
                rule_id=str(rule.id),
                metric_code=rule.metric_code,
                value=p.metric.value,
                threshold=rule.threshold,
                severity=rule.severity,
                action=action.value,
                action_success=action_result.success,
            )
            new_breaches.append(NewBreach(
                breach_id=breach_id,
                rule_id=rule.id,
                metric_code=rule.metric_code,
                value=p.metric.value,
                threshold=rule.threshold,
                severity=rule.severity,
                action=action,
                action_result=action_result,
            ))

        return DetectResult(
            detected=True,
            appetite_id=appetite.id,
            new_breaches=new_breaches,
            skipped=skipped,
            detected_at=datetime.utcnow(),
        )

    async def _record_observations(
        self, session: AsyncSession, tenant_id: uuid.UUID, resolved: dict[str, MetricValue]
    ) -> None:
        """Append provisional RULE observations for recomputed metrics."""
        for metric in resolved.values():
            if metric.from_ledger:
                continue
            await self.ledger.record_rule_observation(
                session,
                tenant_id,
                metric_code=metric.code,
                value=metric.value,
                provenance=Provenance(
                    evidence=metric.evidence,
                    formula=metric.formula,
                    sources=metric.sources,
                    notes="Recorded by risk appetite detection pass",
                ),
            )

    async def impact_preview(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        metric_code: str,
        threshold: float,
        operator: Operator,
    ) -> ImpactPreview:
        """Would the current value breach a proposed threshold?"""
        try:
            metric = await self.resolver.resolve_or_raise(session, tenant_id, metric_code)
        except MetricResolutionError as e:
            raise ValidationError(
                f"metric cannot be resolved: {e.reason}",
                field="metricCode",
                details={"metric_code": metric_code},
            ) from e
        return ImpactPreview(
            metric_code=metric_code,
            current_value=metric.value,
            proposed_threshold=threshold,
            operator=operator,
            would_breach=evaluate(metric.value, operator, threshold),
            source=metric.source,
        )
