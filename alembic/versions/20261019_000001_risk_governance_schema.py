"""Risk governance schema.

Fact ledger, risk appetites, breach events, simulations, audit trail,
automation flags, and the operational tables the metric resolver reads.
The two partial unique indexes carry the concurrency invariants:
one active appetite per tenant and one open breach per rule.

Revision ID: riskgov_001
Revises:
Create Date: 2026-10-19
"""

from alembic import op

# revision identifiers, used by Alembic.
revision = "riskgov_001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ──────────────────────────────────────────────────────────────────────
    # Tenancy
    # ──────────────────────────────────────────────────────────────────────
    op.execute("""
    CREATE TABLE IF NOT EXISTS tenants (
        id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        name            VARCHAR(255) NOT NULL,
        slug            VARCHAR(100) UNIQUE NOT NULL,
        is_active       BOOLEAN NOT NULL DEFAULT TRUE,
        created_at      TIMESTAMP DEFAULT NOW()
    )
    """)

    # ──────────────────────────────────────────────────────────────────────
    # Fact ledger (append-only)
    # ──────────────────────────────────────────────────────────────────────
    op.execute("""
    CREATE TABLE IF NOT EXISTS decision_snapshots (
        id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        tenant_id           UUID NOT NULL REFERENCES tenants(id),
        metric_code         VARCHAR(100) NOT NULL,
        metric_version      INTEGER NOT NULL DEFAULT 1,
        entity_type         VARCHAR(50) NOT NULL DEFAULT 'tenant',
        entity_id           VARCHAR(100),
        dimensions          JSONB NOT NULL DEFAULT '{}',
        value               DOUBLE PRECISION NOT NULL,
        currency            VARCHAR(10) NOT NULL DEFAULT 'VND',
        truth_level         VARCHAR(20) NOT NULL,
        authority           VARCHAR(20) NOT NULL,
        confidence          DOUBLE PRECISION NOT NULL,
        as_of               TIMESTAMP NOT NULL,
        derived_from        JSONB NOT NULL,
        calculation_hash    VARCHAR(64) NOT NULL,
        supersedes_id       UUID REFERENCES decision_snapshots(id),
        created_by          VARCHAR(100),
        created_at          TIMESTAMP NOT NULL DEFAULT NOW(),
        CONSTRAINT ck_decision_snapshots_truth_authority CHECK (
            (truth_level = 'provisional' AND authority = 'RULE') OR
            (truth_level = 'settled' AND authority IN ('BANK', 'MANUAL', 'ACCOUNTING', 'GATEWAY', 'CARRIER'))
        ),
        CONSTRAINT ck_decision_snapshots_confidence CHECK (confidence >= 0 AND confidence <= 100)
    )
    """)
    op.execute("""
    CREATE INDEX IF NOT EXISTS ix_decision_snapshots_latest
        ON decision_snapshots(tenant_id, metric_code, entity_id, as_of)
    """)
    # Reject UPDATE and DELETE at the database level as well
    op.execute("""
    CREATE OR REPLACE FUNCTION decision_snapshots_immutable() RETURNS TRIGGER AS $$
    BEGIN
        RAISE EXCEPTION 'decision_snapshots is append-only';
    END;
    $$ LANGUAGE plpgsql
    """)
    op.execute("""
    CREATE TRIGGER trg_decision_snapshots_immutable
        BEFORE UPDATE OR DELETE ON decision_snapshots
        FOR EACH ROW EXECUTE FUNCTION decision_snapshots_immutable()
    """)

    # ──────────────────────────────────────────────────────────────────────
    # Risk appetite
    # ──────────────────────────────────────────────────────────────────────
    op.execute("""
    CREATE TABLE IF NOT EXISTS risk_appetites (
        id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        tenant_id       UUID NOT NULL REFERENCES tenants(id),
        version         INTEGER NOT NULL,
        name            VARCHAR(255) NOT NULL,
        description     TEXT,
        status          VARCHAR(20) NOT NULL DEFAULT 'draft',
        activated_at    TIMESTAMP,
        created_by      VARCHAR(100),
        created_at      TIMESTAMP DEFAULT NOW(),
        CONSTRAINT uq_risk_appetites_tenant_version UNIQUE (tenant_id, version)
    )
    """)
    op.execute("""
    CREATE UNIQUE INDEX IF NOT EXISTS uq_risk_appetites_one_active
        ON risk_appetites(tenant_id) WHERE status = 'active'
    """)

    op.execute("""
    CREATE TABLE IF NOT EXISTS risk_appetite_rules (
        id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        tenant_id           UUID NOT NULL REFERENCES tenants(id),
        risk_appetite_id    UUID NOT NULL REFERENCES risk_appetites(id) ON DELETE CASCADE,
        risk_domain         VARCHAR(50) NOT NULL,
        metric_code         VARCHAR(100) NOT NULL,
        metric_label        VARCHAR(255) NOT NULL,
        operator            VARCHAR(2) NOT NULL,
        threshold           DOUBLE PRECISION NOT NULL,
        unit                VARCHAR(20) NOT NULL DEFAULT '',
        severity            VARCHAR(20) NOT NULL DEFAULT 'medium',
        action_on_breach    VARCHAR(30) NOT NULL DEFAULT 'ALERT',
        is_enabled          BOOLEAN NOT NULL DEFAULT TRUE,
        created_at          TIMESTAMP DEFAULT NOW()
    )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_risk_appetite_rules_appetite ON risk_appetite_rules(risk_appetite_id)")

    op.execute("""
    CREATE TABLE IF NOT EXISTS risk_breach_events (
        id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        tenant_id           UUID NOT NULL REFERENCES tenants(id),
        risk_appetite_id    UUID REFERENCES risk_appetites(id),
        rule_id             UUID NOT NULL REFERENCES risk_appetite_rules(id),
        metric_code         VARCHAR(100) NOT NULL,
        metric_value        DOUBLE PRECISION NOT NULL,
        threshold           DOUBLE PRECISION NOT NULL,
        operator            VARCHAR(2) NOT NULL,
        severity            VARCHAR(20) NOT NULL,
        action_taken        VARCHAR(30) NOT NULL,
        action_result       JSONB NOT NULL DEFAULT '{}',
        breached_at         TIMESTAMP NOT NULL DEFAULT NOW(),
        is_resolved         BOOLEAN NOT NULL DEFAULT FALSE,
        resolved_at         TIMESTAMP,
        resolved_by         VARCHAR(100),
        resolution_notes    TEXT
    )
    """)
    op.execute("""
    CREATE UNIQUE INDEX IF NOT EXISTS uq_risk_breach_events_one_open
        ON risk_breach_events(tenant_id, rule_id) WHERE is_resolved = false
    """)
    op.execute("""
    CREATE INDEX IF NOT EXISTS ix_risk_breach_events_tenant_breached
        ON risk_breach_events(tenant_id, breached_at)
    """)

    # ──────────────────────────────────────────────────────────────────────
    # Simulations
    # ──────────────────────────────────────────────────────────────────────
    op.execute("""
    CREATE TABLE IF NOT EXISTS risk_stress_tests (
        id                      UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        tenant_id               UUID NOT NULL REFERENCES tenants(id),
        test_name               VARCHAR(255) NOT NULL,
        description             TEXT,
        base_risk_appetite_id   UUID REFERENCES risk_appetites(id),
        simulated_risk_appetite JSONB NOT NULL DEFAULT '[]',
        impact_summary          JSONB NOT NULL DEFAULT '{}',
        detailed_impacts        JSONB NOT NULL DEFAULT '[]',
        baseline_metrics        JSONB NOT NULL DEFAULT '{}',
        simulated_metrics       JSONB NOT NULL DEFAULT '{}',
        simulated_at            TIMESTAMP NOT NULL DEFAULT NOW(),
        created_by              VARCHAR(100),
        created_at              TIMESTAMP DEFAULT NOW()
    )
    """)
    op.execute("""
    CREATE INDEX IF NOT EXISTS ix_risk_stress_tests_tenant_created
        ON risk_stress_tests(tenant_id, created_at)
    """)

    op.execute("""
    CREATE TABLE IF NOT EXISTS board_scenarios (
        id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        tenant_id           UUID NOT NULL REFERENCES tenants(id),
        scenario_name       VARCHAR(255) NOT NULL,
        scenario_type       VARCHAR(30) NOT NULL,
        description         TEXT,
        assumptions         JSONB NOT NULL DEFAULT '{}',
        baseline_snapshot   JSONB NOT NULL DEFAULT '{}',
        projected_outcomes  JSONB NOT NULL DEFAULT '[]',
        risk_breaches       JSONB NOT NULL DEFAULT '[]',
        control_impacts     JSONB NOT NULL DEFAULT '{}',
        is_archived         BOOLEAN NOT NULL DEFAULT FALSE,
        created_by          VARCHAR(100),
        created_at          TIMESTAMP DEFAULT NOW()
    )
    """)
    op.execute("""
    CREATE INDEX IF NOT EXISTS ix_board_scenarios_tenant_created
        ON board_scenarios(tenant_id, created_at)
    """)

    # ──────────────────────────────────────────────────────────────────────
    # Alerts, audit trail, automation flags
    # ──────────────────────────────────────────────────────────────────────
    op.execute("""
    CREATE TABLE IF NOT EXISTS alert_instances (
        id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        tenant_id       UUID NOT NULL REFERENCES tenants(id),
        alert_type      VARCHAR(50) NOT NULL,
        category        VARCHAR(50) NOT NULL,
        severity        VARCHAR(20) NOT NULL,
        title           VARCHAR(500) NOT NULL,
        message         TEXT NOT NULL,
        status          VARCHAR(20) NOT NULL DEFAULT 'open',
        priority        INTEGER,
        metadata        JSONB NOT NULL DEFAULT '{}',
        created_at      TIMESTAMP DEFAULT NOW()
    )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_alert_instances_tenant_status ON alert_instances(tenant_id, status)")

    op.execute("""
    CREATE TABLE IF NOT EXISTS audit_events (
        id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        tenant_id       UUID NOT NULL REFERENCES tenants(id),
        sequence        INTEGER NOT NULL,
        actor_type      VARCHAR(20) NOT NULL DEFAULT 'SYSTEM',
        actor_id        VARCHAR(100),
        action          VARCHAR(100) NOT NULL,
        resource_type   VARCHAR(100) NOT NULL,
        resource_id     VARCHAR(100),
        before_state    JSONB,
        after_state     JSONB,
        previous_hash   VARCHAR(64),
        entry_hash      VARCHAR(64) NOT NULL,
        created_at      TIMESTAMP NOT NULL DEFAULT NOW(),
        CONSTRAINT uq_audit_events_tenant_sequence UNIQUE (tenant_id, sequence)
    )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_audit_events_tenant_action ON audit_events(tenant_id, action)")

    op.execute("""
    CREATE TABLE IF NOT EXISTS tenant_ml_settings (
        tenant_id                   UUID PRIMARY KEY REFERENCES tenants(id),
        auto_reconciliation_enabled BOOLEAN NOT NULL DEFAULT TRUE,
        ml_enabled                  BOOLEAN NOT NULL DEFAULT TRUE,
        ml_status                   VARCHAR(20) NOT NULL DEFAULT 'ACTIVE',
        approval_gated_domains      JSONB NOT NULL DEFAULT '[]',
        last_fallback_reason        TEXT,
        last_fallback_at            TIMESTAMP,
        updated_at                  TIMESTAMP DEFAULT NOW()
    )
    """)

    # ──────────────────────────────────────────────────────────────────────
    # Operational data read by the metric resolver
    # ──────────────────────────────────────────────────────────────────────
    op.execute("""
    CREATE TABLE IF NOT EXISTS invoices (
        id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        tenant_id       UUID NOT NULL REFERENCES tenants(id),
        invoice_number  VARCHAR(50) NOT NULL,
        total_amount    NUMERIC(18, 2) NOT NULL,
        status          VARCHAR(20) NOT NULL DEFAULT 'draft',
        invoice_date    TIMESTAMP NOT NULL DEFAULT NOW(),
        due_date        TIMESTAMP,
        created_at      TIMESTAMP DEFAULT NOW()
    )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_invoices_tenant_status ON invoices(tenant_id, status)")

    op.execute("""
    CREATE TABLE IF NOT EXISTS bills (
        id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        tenant_id       UUID NOT NULL REFERENCES tenants(id),
        bill_number     VARCHAR(50) NOT NULL,
        total_amount    NUMERIC(18, 2) NOT NULL,
        status          VARCHAR(20) NOT NULL DEFAULT 'open',
        bill_date       TIMESTAMP NOT NULL DEFAULT NOW(),
        created_at      TIMESTAMP DEFAULT NOW()
    )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_bills_tenant_created ON bills(tenant_id, created_at)")

    op.execute("""
    CREATE TABLE IF NOT EXISTS exceptions_queue (
        id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        tenant_id       UUID NOT NULL REFERENCES tenants(id),
        exception_type  VARCHAR(50) NOT NULL,
        impact_amount   NUMERIC(18, 2) NOT NULL DEFAULT 0,
        status          VARCHAR(20) NOT NULL DEFAULT 'open',
        created_at      TIMESTAMP DEFAULT NOW()
    )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_exceptions_queue_tenant_status ON exceptions_queue(tenant_id, status)")

    op.execute("""
    CREATE TABLE IF NOT EXISTS reconciliation_suggestion_outcomes (
        id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        tenant_id       UUID NOT NULL REFERENCES tenants(id),
        outcome         VARCHAR(30) NOT NULL,
        created_at      TIMESTAMP DEFAULT NOW()
    )
    """)
    op.execute("""
    CREATE INDEX IF NOT EXISTS ix_recon_outcomes_tenant_created
        ON reconciliation_suggestion_outcomes(tenant_id, created_at)
    """)

    op.execute("""
    CREATE TABLE IF NOT EXISTS reconciliation_guardrail_events (
        id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        tenant_id       UUID NOT NULL REFERENCES tenants(id),
        event_type      VARCHAR(30) NOT NULL,
        created_at      TIMESTAMP DEFAULT NOW()
    )
    """)
    op.execute("""
    CREATE INDEX IF NOT EXISTS ix_guardrail_events_tenant_created
        ON reconciliation_guardrail_events(tenant_id, created_at)
    """)

    op.execute("""
    CREATE TABLE IF NOT EXISTS ml_performance_snapshots (
        id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        tenant_id           UUID NOT NULL REFERENCES tenants(id),
        accuracy            DOUBLE PRECISION,
        calibration_error   DOUBLE PRECISION,
        created_at          TIMESTAMP DEFAULT NOW()
    )
    """)

    op.execute("""
    CREATE TABLE IF NOT EXISTS ml_drift_signals (
        id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        tenant_id       UUID NOT NULL REFERENCES tenants(id),
        severity        VARCHAR(20) NOT NULL,
        created_at      TIMESTAMP DEFAULT NOW()
    )
    """)

    op.execute("""
    CREATE TABLE IF NOT EXISTS approval_requests (
        id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        tenant_id       UUID NOT NULL REFERENCES tenants(id),
        domain          VARCHAR(50),
        status          VARCHAR(20) NOT NULL DEFAULT 'pending',
        created_at      TIMESTAMP DEFAULT NOW()
    )
    """)


def downgrade() -> None:
    for table in (
        "approval_requests",
        "ml_drift_signals",
        "ml_performance_snapshots",
        "reconciliation_guardrail_events",
        "reconciliation_suggestion_outcomes",
        "exceptions_queue",
        "bills",
        "invoices",
        "tenant_ml_settings",
        "audit_events",
        "alert_instances",
        "board_scenarios",
        "risk_stress_tests",
        "risk_breach_events",
        "risk_appetite_rules",
        "risk_appetites",
    ):
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE")
    op.execute("DROP TRIGGER IF EXISTS trg_decision_snapshots_immutable ON decision_snapshots")
    op.execute("DROP FUNCTION IF EXISTS decision_snapshots_immutable()")
    op.execute("DROP TABLE IF EXISTS decision_snapshots CASCADE")
    op.execute("DROP TABLE IF EXISTS tenants CASCADE")
