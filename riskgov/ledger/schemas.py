"""
Fact Ledger Schemas.

A metric observation is tagged with a truth level and an authority:
provisional observations come only from RULE, settled observations only
from a system of record (BANK, MANUAL, ACCOUNTING, GATEWAY, CARRIER).
"""

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

from pydantic import Field

from riskgov.schemas import CamelModel


# ── Enums ──────────────────────────────────────────────────────────────


class TruthLevel(StrEnum):
    SETTLED = "settled"
    PROVISIONAL = "provisional"


class Authority(StrEnum):
    BANK = "BANK"
    MANUAL = "MANUAL"
    RULE = "RULE"
    ACCOUNTING = "ACCOUNTING"
    GATEWAY = "GATEWAY"
    CARRIER = "CARRIER"


SETTLED_AUTHORITIES: frozenset[Authority] = frozenset({
    Authority.BANK,
    Authority.MANUAL,
    Authority.ACCOUNTING,
    Authority.GATEWAY,
    Authority.CARRIER,
})

DEFAULT_CONFIDENCE: dict[TruthLevel, float] = {
    TruthLevel.SETTLED: 100.0,
    TruthLevel.PROVISIONAL: 75.0,
}


# ── Provenance ─────────────────────────────────────────────────────────


class Provenance(CamelModel):
    """Where a value came from and how it was computed."""
    evidence: list[Any] = Field(default_factory=list)
    formula: Optional[str] = None
    sources: list[str] = Field(default_factory=list)
    assumptions: list[str] = Field(default_factory=list)
    notes: Optional[str] = None


# ── Requests ───────────────────────────────────────────────────────────


class SnapshotCreateRequest(CamelModel):
    """Append one observation to the ledger."""
    tenant_id: Optional[uuid.UUID] = None
    metric_code: str = Field(min_length=1, max_length=100)
    metric_version: int = Field(default=1, ge=1)
    entity_type: str = "tenant"
    entity_id: Optional[str] = None
    dimensions: dict[str, Any] = Field(default_factory=dict)
    value: float
    currency: Optional[str] = None
    truth_level: TruthLevel
    authority: Authority
    confidence: Optional[float] = Field(default=None, ge=0, le=100)
    as_of: Optional[datetime] = None
    derived_from: Provenance
    supersedes_id: Optional[uuid.UUID] = None


# ── Responses ──────────────────────────────────────────────────────────


class SnapshotResponse(CamelModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    metric_code: str
    metric_version: int
    entity_type: str
    entity_id: Optional[str] = None
    dimensions: dict[str, Any]
    value: float
    currency: str
    truth_level: TruthLevel
    authority: Authority
    confidence: float
    as_of: datetime
    derived_from: dict[str, Any]
    calculation_hash: str
    supersedes_id: Optional[uuid.UUID] = None
    created_by: Optional[str] = None
    created_at: datetime


class SnapshotExplanation(CamelModel):
    metric_code: str
    value: float
    currency: str
    truth_level: TruthLevel
    authority: Authority
    confidence: float
    as_of: datetime
    evidence: list[Any]
    assumptions: list[str]
    sources: list[str]
    formula: Optional[str] = None
    notes: Optional[str] = None


class ExplainResponse(CamelModel):
    snapshot: SnapshotResponse
    formatted: SnapshotExplanation


class StaleMetric(CamelModel):
    metric_code: str
    as_of: datetime
    age_minutes: float


class StaleCheckResponse(CamelModel):
    is_stale: bool
    stale_metrics: list[StaleMetric]
    missing_metrics: list[str]
    threshold_minutes: int
    checked_at: datetime


class LineageResponse(CamelModel):
    """Observation chain, newest first, following supersedes_id."""
    snapshot_id: uuid.UUID
    depth: int
    chain: list[SnapshotResponse]
