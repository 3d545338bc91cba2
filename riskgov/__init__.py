"""
RiskGov: Risk Appetite Governance Engine.

Architecture:
    Operational data (invoices, exceptions, outcomes, ML snapshots)
    → Metric Resolver (registry of metric recipes)
    → Rule Evaluator (pure threshold comparison)
    → Risk Appetite Engine (active appetite, per-rule evaluation)
    → Breach Recorder (one open breach per rule) → Enforcement Dispatcher
    → Audit Trail (hash-chained)

Side channels:
    Fact Ledger      : append-only metric observations with truth level + authority
    Stress Test      : counterfactual threshold simulation, isolated storage
    Board Scenarios  : what-if financial projections, never touch the ledger
"""

__version__ = "1.0.0"
