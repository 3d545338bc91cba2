"""
Enforcement Dispatcher.

Executes the action attached to a breached rule. Every action is safe to
repeat. Each attempt runs inside a savepoint with a bounded timeout; a
failure rolls back only that action and is reported as success=False.
The RISK_BREACH_ENFORCEMENT audit event is written after every attempt,
whether the action succeeded or not.
"""

import asyncio
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.appetite.schemas import ActionResult, EnforcementAction
from riskgov.config import settings
from riskgov.db.models import RiskAppetiteRule
from riskgov.errors import EnforcementActionError
from riskgov.services.alerts import AlertSink
from riskgov.services.audit import AuditTrail
from riskgov.services.flags import FlagStore

logger = structlog.get_logger(__name__)

ActionHandler = Callable[[AsyncSession, uuid.UUID, RiskAppetiteRule, float, dict], Awaitable[None]]


def _fallback_reason(rule: RiskAppetiteRule) -> str:
    return f"Risk breach: {rule.metric_code} {rule.operator} {rule.threshold}"


class EnforcementDispatcher:
    def __init__(
        self,
        alerts: Optional[AlertSink] = None,
        flags: Optional[FlagStore] = None,
        audit: Optional[AuditTrail] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.alerts = alerts or AlertSink()
        self.flags = flags or FlagStore()
        self.audit = audit or AuditTrail()
        self.timeout_seconds = timeout_seconds or settings.enforcement_timeout_seconds
        self._handlers: dict[EnforcementAction, ActionHandler] = {
            EnforcementAction.ALERT: self._alert,
            EnforcementAction.REQUIRE_APPROVAL: self._require_approval,
            EnforcementAction.BLOCK_AUTOMATION: self._block_automation,
            EnforcementAction.DISABLE_ML: self._disable_ml,
            EnforcementAction.ESCALATE_TO_BOARD: self._escalate_to_board,
        }

    async def execute(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        action: EnforcementAction,
        rule: RiskAppetiteRule,
        metric_value: float,
    ) -> ActionResult:
        details: dict = {"action": action.value, "executedAt": datetime.utcnow().isoformat()}
        before = await self.flags.snapshot(session, tenant_id)

        success = True
        try:
            handler = self._handlers.get(action)
            if handler is None:
                raise EnforcementActionError(action.value, "no handler registered")
            async with session.begin_nested():
                await asyncio.wait_for(
                    handler(session, tenant_id, rule, metric_value, details),
                    timeout=self.timeout_seconds,
                )
        except asyncio.TimeoutError:
            success = False
            error = EnforcementActionError(action.value, f"timed out after {self.timeout_seconds}s")
            details["error"] = error.message
        except EnforcementActionError as e:
            success = False
            details["error"] = e.message
        except Exception as e:
            success = False
            details["error"] = EnforcementActionError(action.value, str(e)).message

        if success:
            logger.info(
                "enforcement_action_executed",
                tenant_id=str(tenant_id),
                rule_id=str(rule.id),
                action=action.value,
            )
        else:
            logger.error(
                "enforcement_action_failed",
                tenant_id=str(tenant_id),
                rule_id=str(rule.id),
                action=action.value,
                error=details["error"],
            )

        after = await self.flags.snapshot(session, tenant_id)
        await self.audit.append(
            session,
            tenant_id,
            action="RISK_BREACH_ENFORCEMENT",
            resource_type="risk_appetite_rule",
            resource_id=str(rule.id),
            before_state={"flags": before},
            after_state={
                "action": action.value,
                "metricCode": rule.metric_code,
                "metricValue": metric_value,
                "threshold": rule.threshold,
                "ruleId": str(rule.id),
                "success": success,
                "flags": after,
            },
        )
        return ActionResult(success=success, details=details)

    # ── Action handlers ────────────────────────────────────────────────

    async def _alert(self, session, tenant_id, rule, metric_value, details) -> None:
        alert = await self.alerts.create(
            session,
            tenant_id,
            alert_type="risk_breach",
            category="governance",
            severity=rule.severity,
            title=f"Risk Appetite Breach: {rule.metric_code}",
            message=(
                f"Metric {rule.metric_code} breached threshold "
                f"{rule.operator} {rule.threshold}. Current value: {metric_value}"
            ),
            metadata={"ruleId": str(rule.id), "metricValue": metric_value},
        )
        details["alertCreated"] = True
        details["alertId"] = str(alert.id)

    async def _require_approval(self, session, tenant_id, rule, metric_value, details) -> None:
        await self.flags.gate_domain(session, tenant_id, rule.risk_domain)
        details["approvalRequired"] = True
        details["domain"] = rule.risk_domain
        details["message"] = "Future actions in this domain will require approval"

    async def _block_automation(self, session, tenant_id, rule, metric_value, details) -> None:
        await self.flags.disable_auto_reconciliation(session, tenant_id, _fallback_reason(rule))
        details["automationBlocked"] = True

    async def _disable_ml(self, session, tenant_id, rule, metric_value, details) -> None:
        await self.flags.disable_ml(session, tenant_id, _fallback_reason(rule))
        details["mlDisabled"] = True

    async def _escalate_to_board(self, session, tenant_id, rule, metric_value, details) -> None:
        alert = await self.alerts.create(
            session,
            tenant_id,
            alert_type="board_escalation",
            category="governance",
            severity="critical",
            title=f"BOARD ESCALATION: Risk Breach - {rule.metric_code}",
            message=(
                "Critical risk appetite breach requires board attention. "
                f"Metric: {rule.metric_code}, Value: {metric_value}"
            ),
            priority=1,
            metadata={"ruleId": str(rule.id), "metricValue": metric_value},
        )
        details["escalatedToBoard"] = True
        details["alertId"] = str(alert.id)
