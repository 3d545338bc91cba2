"""
Simulation Schemas: stress tests and board scenarios.

Every figure here is hypothetical. Stress-test projections are labelled
estimates; board-scenario outputs carry truthLevel "simulated".
"""

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal, Optional

from pydantic import Field

from riskgov.appetite.schemas import Operator, Severity
from riskgov.schemas import CamelModel


# ── Stress test ────────────────────────────────────────────────────────


class ImpactType(StrEnum):
    NO_CHANGE = "no_change"
    NEW_BREACH = "new_breach"
    RESOLVED = "resolved"
    STILL_BREACHED = "still_breached"


class SimulatedChange(CamelModel):
    """Proposed threshold for the rule(s) on one metric."""
    metric_code: str = Field(min_length=1)
    simulated_threshold: float
    operator: Optional[Operator] = None


class StressTestRequest(CamelModel):
    simulated_changes: list[SimulatedChange] = Field(min_length=1)
    test_name: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = None


class StressPreviewRequest(CamelModel):
    simulated_changes: list[SimulatedChange] = Field(min_length=1)


class RuleImpact(CamelModel):
    rule_id: uuid.UUID
    metric_code: str
    metric_label: str
    current_value: float
    original_operator: Operator
    simulated_operator: Operator
    original_threshold: float
    simulated_threshold: float
    was_breached: bool
    would_breach: bool
    impact_type: ImpactType


class Estimate(CamelModel):
    """Heuristic projection; not a ledger value."""
    current: float
    simulated: float
    delta: float
    is_estimate: bool = True
    method: str


class BreachChanges(CamelModel):
    new_breaches: int
    resolved: int
    unchanged: int


class ImpactSummary(CamelModel):
    auto_reconciliation_rate: Estimate
    approvals_required: Estimate
    risk_exposure: Estimate
    breach_changes: BreachChanges
    skipped_metrics: list[str] = Field(default_factory=list)
    unmatched_changes: list[str] = Field(default_factory=list)


class StressTestResult(CamelModel):
    test_id: uuid.UUID
    impact_summary: ImpactSummary
    detailed_impacts: list[RuleImpact]
    simulated_at: datetime


class StressPreviewResult(CamelModel):
    preview: bool = True
    new_breaches: int
    resolved: int
    impacts: list[RuleImpact]
    skipped_metrics: list[str] = Field(default_factory=list)
    message: str


class StressTestRecord(CamelModel):
    id: uuid.UUID
    test_name: str
    description: Optional[str] = None
    base_risk_appetite_id: Optional[uuid.UUID] = None
    simulated_risk_appetite: list[Any]
    impact_summary: dict[str, Any]
    detailed_impacts: list[Any]
    baseline_metrics: dict[str, Any]
    simulated_metrics: dict[str, Any]
    simulated_at: datetime
    created_by: Optional[str] = None
    created_at: datetime


class StressTestHistory(CamelModel):
    tests: list[StressTestRecord]


# ── Board scenarios ────────────────────────────────────────────────────


class ScenarioType(StrEnum):
    REVENUE_SHOCK = "REVENUE_SHOCK"
    AR_DELAY = "AR_DELAY"
    COST_INFLATION = "COST_INFLATION"
    AUTOMATION_PAUSE = "AUTOMATION_PAUSE"
    CUSTOM = "CUSTOM"


class ScenarioAssumptions(CamelModel):
    revenue_change: Optional[float] = None     # % change
    ar_delay_days: Optional[float] = Field(default=None, ge=0)
    cost_inflation: Optional[float] = None     # % increase
    automation_paused: bool = False
    custom_factors: dict[str, float] = Field(default_factory=dict)


class BoardScenarioRequest(CamelModel):
    scenario_name: str = Field(min_length=1, max_length=255)
    scenario_type: ScenarioType
    description: Optional[str] = None
    assumptions: ScenarioAssumptions = Field(default_factory=ScenarioAssumptions)


class Baseline(CamelModel):
    cash_position: float = 0.0
    cash_next7d: float = 0.0
    ar_outstanding: float = 0.0
    ar_overdue: float = 0.0
    monthly_revenue: float = 0.0
    monthly_costs: float = 0.0
    auto_reconciliation_rate: float = 0.0


class ProjectedOutcome(CamelModel):
    metric: str
    metric_code: str
    baseline: float
    projected: float
    delta: float
    delta_percent: float
    unit: str


class SimulatedBreach(CamelModel):
    metric_code: str
    metric_label: str
    operator: Operator
    threshold: float
    projected_value: float
    severity: Severity
    truth_level: Literal["simulated"] = "simulated"


class ControlImpacts(CamelModel):
    automation_affected: bool
    approval_volume_change: Literal["increased", "unchanged"]
    manual_review_required: bool


class BoardScenarioResult(CamelModel):
    scenario_id: uuid.UUID
    scenario_name: str
    scenario_type: ScenarioType
    baseline: Baseline
    projected_outcomes: list[ProjectedOutcome]
    risk_breaches: list[SimulatedBreach]
    control_impacts: ControlImpacts
    simulated_at: datetime
    is_simulation: Literal[True] = True
    truth_level: Literal["simulated"] = "simulated"


class BoardScenarioRecord(CamelModel):
    id: uuid.UUID
    scenario_name: str
    scenario_type: ScenarioType
    description: Optional[str] = None
    assumptions: dict[str, Any]
    baseline_snapshot: dict[str, Any]
    projected_outcomes: list[Any]
    risk_breaches: list[Any]
    control_impacts: dict[str, Any]
    is_archived: bool
    created_by: Optional[str] = None
    created_at: datetime
    is_simulation: Literal[True] = True
    truth_level: Literal["simulated"] = "simulated"


class BoardScenarioList(CamelModel):
    scenarios: list[BoardScenarioRecord]


class ScenarioTemplate(CamelModel):
    id: ScenarioType
    name: str
    description: str
    default_assumptions: dict[str, Any]


class ScenarioTemplateList(CamelModel):
    templates: list[ScenarioTemplate]


class ComparedScenario(CamelModel):
    id: uuid.UUID
    name: str
    type: ScenarioType
    breach_count: int


class ScenarioComparison(CamelModel):
    scenarios: list[ComparedScenario]
    comparison: dict[str, dict[str, float]]


class ArchiveScenarioRequest(CamelModel):
    scenario_id: uuid.UUID
