"""
SQLAlchemy models.

Governance tables (ledger, appetites, breaches, simulations, audit) plus the
operational tables the metric resolver reads. Compatibility types keep the
schema usable on SQLite (dev/tests) and PostgreSQL (prod).
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from riskgov.db.compat import GUID, JSONType
from riskgov.db.engine import Base


def _genuuid():
    return uuid.uuid4()


# ──────────────────────────────────────────────────────────────────────────────
# Tenancy
# ──────────────────────────────────────────────────────────────────────────────


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


# ──────────────────────────────────────────────────────────────────────────────
# Fact Ledger
# ──────────────────────────────────────────────────────────────────────────────


class MetricObservation(Base):
    """
    Append-only metric observation (decision snapshot).

    NO UPDATE, NO DELETE. Corrections are new rows pointing at the replaced
    row through supersedes_id. The current value is the latest as_of per
    (tenant_id, metric_code, entity_id).
    """

    __tablename__ = "decision_snapshots"
    __table_args__ = (
        CheckConstraint(
            "(truth_level = 'provisional' AND authority = 'RULE') OR "
            "(truth_level = 'settled' AND authority IN "
            "('BANK', 'MANUAL', 'ACCOUNTING', 'GATEWAY', 'CARRIER'))",
            name="ck_decision_snapshots_truth_authority",
        ),
        CheckConstraint("confidence >= 0 AND confidence <= 100", name="ck_decision_snapshots_confidence"),
        Index("ix_decision_snapshots_latest", "tenant_id", "metric_code", "entity_id", "as_of"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), nullable=False)
    metric_code: Mapped[str] = mapped_column(String(100), nullable=False)
    metric_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, default="tenant")
    entity_id: Mapped[Optional[str]] = mapped_column(String(100))
    dimensions: Mapped[dict] = mapped_column(JSONType(), nullable=False, default=dict)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="VND")
    truth_level: Mapped[str] = mapped_column(String(20), nullable=False)
    authority: Mapped[str] = mapped_column(String(20), nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    as_of: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    derived_from: Mapped[dict] = mapped_column(JSONType(), nullable=False)
    calculation_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    supersedes_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID(), ForeignKey("decision_snapshots.id"))
    created_by: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


@event.listens_for(MetricObservation, "before_update")
def _reject_observation_update(mapper, connection, target):
    raise RuntimeError("decision_snapshots is append-only: updates are not permitted")


@event.listens_for(MetricObservation, "before_delete")
def _reject_observation_delete(mapper, connection, target):
    raise RuntimeError("decision_snapshots is append-only: deletes are not permitted")


# ──────────────────────────────────────────────────────────────────────────────
# Risk Appetite
# ──────────────────────────────────────────────────────────────────────────────


class RiskAppetite(Base):
    """Versioned rule set. At most one active appetite per tenant."""

    __tablename__ = "risk_appetites"
    __table_args__ = (
        UniqueConstraint("tenant_id", "version", name="uq_risk_appetites_tenant_version"),
        Index(
            "uq_risk_appetites_one_active",
            "tenant_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    activated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_by: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    rules: Mapped[list["RiskAppetiteRule"]] = relationship(
        back_populates="appetite",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="RiskAppetiteRule.created_at",
    )


class RiskAppetiteRule(Base):
    __tablename__ = "risk_appetite_rules"
    __table_args__ = (
        Index("ix_risk_appetite_rules_appetite", "risk_appetite_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), nullable=False)
    risk_appetite_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("risk_appetites.id", ondelete="CASCADE"), nullable=False
    )
    risk_domain: Mapped[str] = mapped_column(String(50), nullable=False)
    metric_code: Mapped[str] = mapped_column(String(100), nullable=False)
    metric_label: Mapped[str] = mapped_column(String(255), nullable=False)
    operator: Mapped[str] = mapped_column(String(2), nullable=False)
    threshold: Mapped[float] = mapped_column(Float, nullable=False)
    unit: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="medium")
    action_on_breach: Mapped[str] = mapped_column(String(30), nullable=False, default="ALERT")
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    appetite: Mapped[RiskAppetite] = relationship(back_populates="rules")


class BreachEvent(Base):
    """At most one unresolved breach per (tenant_id, rule_id)."""

    __tablename__ = "risk_breach_events"
    __table_args__ = (
        Index(
            "uq_risk_breach_events_one_open",
            "tenant_id",
            "rule_id",
            unique=True,
            postgresql_where=text("is_resolved = false"),
            sqlite_where=text("is_resolved = 0"),
        ),
        Index("ix_risk_breach_events_tenant_breached", "tenant_id", "breached_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), nullable=False)
    risk_appetite_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID(), ForeignKey("risk_appetites.id"))
    rule_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("risk_appetite_rules.id"), nullable=False)
    metric_code: Mapped[str] = mapped_column(String(100), nullable=False)
    metric_value: Mapped[float] = mapped_column(Float, nullable=False)
    threshold: Mapped[float] = mapped_column(Float, nullable=False)
    operator: Mapped[str] = mapped_column(String(2), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    action_taken: Mapped[str] = mapped_column(String(30), nullable=False)
    action_result: Mapped[dict] = mapped_column(JSONType(), nullable=False, default=dict)
    breached_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    is_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(100))
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text)


# ──────────────────────────────────────────────────────────────────────────────
# Simulations (isolated from ledger and breaches)
# ──────────────────────────────────────────────────────────────────────────────


class StressTest(Base):
    __tablename__ = "risk_stress_tests"
    __table_args__ = (
        Index("ix_risk_stress_tests_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), nullable=False)
    test_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    base_risk_appetite_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID(), ForeignKey("risk_appetites.id"))
    simulated_risk_appetite: Mapped[list] = mapped_column(JSONType(), nullable=False, default=list)
    impact_summary: Mapped[dict] = mapped_column(JSONType(), nullable=False, default=dict)
    detailed_impacts: Mapped[list] = mapped_column(JSONType(), nullable=False, default=list)
    baseline_metrics: Mapped[dict] = mapped_column(JSONType(), nullable=False, default=dict)
    simulated_metrics: Mapped[dict] = mapped_column(JSONType(), nullable=False, default=dict)
    simulated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class BoardScenario(Base):
    __tablename__ = "board_scenarios"
    __table_args__ = (
        Index("ix_board_scenarios_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), nullable=False)
    scenario_name: Mapped[str] = mapped_column(String(255), nullable=False)
    scenario_type: Mapped[str] = mapped_column(String(30), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    assumptions: Mapped[dict] = mapped_column(JSONType(), nullable=False, default=dict)
    baseline_snapshot: Mapped[dict] = mapped_column(JSONType(), nullable=False, default=dict)
    projected_outcomes: Mapped[list] = mapped_column(JSONType(), nullable=False, default=list)
    risk_breaches: Mapped[list] = mapped_column(JSONType(), nullable=False, default=list)
    control_impacts: Mapped[dict] = mapped_column(JSONType(), nullable=False, default=dict)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


# ──────────────────────────────────────────────────────────────────────────────
# Collaborator sinks: alerts, audit trail, automation flags
# ──────────────────────────────────────────────────────────────────────────────


class AlertInstance(Base):
    __tablename__ = "alert_instances"
    __table_args__ = (
        Index("ix_alert_instances_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    priority: Mapped[Optional[int]] = mapped_column(Integer)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONType(), nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class AuditEvent(Base):
    """
    Append-only, hash-chained audit trail.

    Each entry hashes its own content together with the previous entry's
    hash for the same tenant; sequence orders the chain.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        UniqueConstraint("tenant_id", "sequence", name="uq_audit_events_tenant_sequence"),
        Index("ix_audit_events_tenant_action", "tenant_id", "action"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    actor_type: Mapped[str] = mapped_column(String(20), nullable=False, default="SYSTEM")
    actor_id: Mapped[Optional[str]] = mapped_column(String(100))
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(100))
    before_state: Mapped[Optional[dict]] = mapped_column(JSONType())
    after_state: Mapped[Optional[dict]] = mapped_column(JSONType())
    previous_hash: Mapped[Optional[str]] = mapped_column(String(64))
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class TenantAutomationSettings(Base):
    """Per-tenant automation and ML feature flags (enforcement target)."""

    __tablename__ = "tenant_ml_settings"

    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), primary_key=True)
    auto_reconciliation_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    ml_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    ml_status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE")
    approval_gated_domains: Mapped[list] = mapped_column(JSONType(), nullable=False, default=list)
    last_fallback_reason: Mapped[Optional[str]] = mapped_column(Text)
    last_fallback_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# ──────────────────────────────────────────────────────────────────────────────
# Operational data (read by the metric resolver)
# ──────────────────────────────────────────────────────────────────────────────


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        Index("ix_invoices_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), nullable=False)
    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    invoice_date: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Bill(Base):
    __tablename__ = "bills"
    __table_args__ = (
        Index("ix_bills_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), nullable=False)
    bill_number: Mapped[str] = mapped_column(String(50), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    bill_date: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class ExceptionItem(Base):
    """Operational exception awaiting resolution (e.g. AR_OVERDUE)."""

    __tablename__ = "exceptions_queue"
    __table_args__ = (
        Index("ix_exceptions_queue_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), nullable=False)
    exception_type: Mapped[str] = mapped_column(String(50), nullable=False)
    impact_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class ReconciliationOutcome(Base):
    __tablename__ = "reconciliation_suggestion_outcomes"
    __table_args__ = (
        Index("ix_recon_outcomes_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), nullable=False)
    outcome: Mapped[str] = mapped_column(String(30), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class GuardrailEvent(Base):
    __tablename__ = "reconciliation_guardrail_events"
    __table_args__ = (
        Index("ix_guardrail_events_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(30), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class MLPerformanceSnapshot(Base):
    __tablename__ = "ml_performance_snapshots"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), nullable=False)
    accuracy: Mapped[Optional[float]] = mapped_column(Float)
    calibration_error: Mapped[Optional[float]] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class MLDriftSignal(Base):
    __tablename__ = "ml_drift_signals"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class ApprovalRequest(Base):
    __tablename__ = "approval_requests"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), nullable=False)
    domain: Mapped[Optional[str]] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
