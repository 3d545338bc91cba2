"""
Risk Appetite Schemas.

Rules, evaluations, breach records and enforcement outcomes. A rule's
operator is always the breach condition: `value <op> threshold` true
means the rule is breached.
"""

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

from pydantic import Field

from riskgov.schemas import CamelModel


# ── Enums ──────────────────────────────────────────────────────────────


class Operator(StrEnum):
    LT = "<"
    LTE = "<="
    GT = ">"
    GTE = ">="
    EQ = "="


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EnforcementAction(StrEnum):
    ALERT = "ALERT"
    REQUIRE_APPROVAL = "REQUIRE_APPROVAL"
    BLOCK_AUTOMATION = "BLOCK_AUTOMATION"
    DISABLE_ML = "DISABLE_ML"
    ESCALATE_TO_BOARD = "ESCALATE_TO_BOARD"


class AppetiteStatus(StrEnum):
    ACTIVE = "active"
    DRAFT = "draft"
    ARCHIVED = "archived"


# ── Metric resolution ──────────────────────────────────────────────────


class MetricValue(CamelModel):
    """A resolved metric with the provenance needed to explain it."""
    code: str
    value: float
    source: str
    formula: Optional[str] = None
    sources: list[str] = Field(default_factory=list)
    evidence: list[Any] = Field(default_factory=list)
    from_ledger: bool = False


# ── Evaluation ─────────────────────────────────────────────────────────


class RuleEvaluation(CamelModel):
    rule_id: uuid.UUID
    domain: str
    metric_code: str
    metric_label: str
    current_value: float
    threshold: float
    operator: Operator
    unit: str
    is_breached: bool
    severity: Severity
    action_on_breach: EnforcementAction
    source: str


class SkippedRule(CamelModel):
    rule_id: uuid.UUID
    metric_code: str
    reason: str


class EvaluationResult(CamelModel):
    has_active_appetite: bool
    appetite_id: Optional[uuid.UUID] = None
    version: Optional[int] = None
    name: Optional[str] = None
    evaluations: list[RuleEvaluation] = Field(default_factory=list)
    skipped: list[SkippedRule] = Field(default_factory=list)
    breach_count: int = 0
    evaluated_at: datetime


# ── Enforcement / detection ────────────────────────────────────────────


class ActionResult(CamelModel):
    success: bool
    details: dict[str, Any] = Field(default_factory=dict)


class NewBreach(CamelModel):
    breach_id: uuid.UUID
    rule_id: uuid.UUID
    metric_code: str
    value: float
    threshold: float
    severity: Severity
    action: EnforcementAction
    action_result: ActionResult


class DetectResult(CamelModel):
    detected: bool
    appetite_id: Optional[uuid.UUID] = None
    reason: Optional[str] = None
    new_breaches: list[NewBreach] = Field(default_factory=list)
    skipped: list[SkippedRule] = Field(default_factory=list)
    detected_at: datetime


class ImpactPreview(CamelModel):
    metric_code: str
    current_value: float
    proposed_threshold: float
    operator: Operator
    would_breach: bool
    source: str


# ── Breaches ───────────────────────────────────────────────────────────


class BreachResponse(CamelModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    risk_appetite_id: Optional[uuid.UUID] = None
    rule_id: uuid.UUID
    metric_code: str
    metric_value: float
    threshold: float
    operator: Operator
    severity: Severity
    action_taken: EnforcementAction
    action_result: dict[str, Any]
    breached_at: datetime
    is_resolved: bool
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None


class BreachListResponse(CamelModel):
    breaches: list[BreachResponse]


class ResolveBreachRequest(CamelModel):
    breach_id: uuid.UUID
    resolution: Optional[str] = None


# ── Governance ─────────────────────────────────────────────────────────


class RuleDefinition(CamelModel):
    risk_domain: str
    metric_code: str = Field(min_length=1)
    metric_label: Optional[str] = None
    operator: Operator
    threshold: float
    unit: str = ""
    severity: Severity = Severity.MEDIUM
    action_on_breach: EnforcementAction = EnforcementAction.ALERT
    is_enabled: bool = True


class AppetiteCreateRequest(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    rules: list[RuleDefinition] = Field(default_factory=list)


class RuleResponse(CamelModel):
    id: uuid.UUID
    risk_domain: str
    metric_code: str
    metric_label: str
    operator: Operator
    threshold: float
    unit: str
    severity: Severity
    action_on_breach: EnforcementAction
    is_enabled: bool


class AppetiteResponse(CamelModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    version: int
    name: str
    description: Optional[str] = None
    status: AppetiteStatus
    activated_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime
    rules: list[RuleResponse] = Field(default_factory=list)


class AppetiteListResponse(CamelModel):
    appetites: list[AppetiteResponse]


class MetricCatalogResponse(CamelModel):
    metrics: list[str]
