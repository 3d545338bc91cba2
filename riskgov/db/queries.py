"""
Operational query layer.

Tenant-filtered reads over invoices, bills, exceptions, reconciliation
outcomes, guardrail events and ML monitoring tables. Every function takes
an explicit tenant_id; aggregates return plain floats/ints (0 when empty).
"""

import uuid
from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.db.models import (
    ApprovalRequest,
    Bill,
    ExceptionItem,
    GuardrailEvent,
    Invoice,
    MLDriftSignal,
    MLPerformanceSnapshot,
    ReconciliationOutcome,
    Tenant,
)

OUTSTANDING_INVOICE_STATUSES = ("sent", "overdue")


# ── Tenants ──────────────────────────────────────────────────────────────


async def get_active_tenants(session: AsyncSession) -> Sequence[Tenant]:
    """All active tenants (for scheduler iteration)."""
    result = await session.execute(select(Tenant).where(Tenant.is_active.is_(True)))
    return result.scalars().all()


# ── Receivables / Payables ───────────────────────────────────────────────


async def sum_outstanding_invoices(session: AsyncSession, tenant_id: uuid.UUID) -> float:
    result = await session.execute(
        select(func.coalesce(func.sum(Invoice.total_amount), 0))
        .where(Invoice.tenant_id == tenant_id)
        .where(Invoice.status.in_(OUTSTANDING_INVOICE_STATUSES))
    )
    return float(result.scalar_one())


async def sum_invoices_since(session: AsyncSession, tenant_id: uuid.UUID, since: datetime) -> float:
    """Invoiced revenue dated on/after `since`."""
    result = await session.execute(
        select(func.coalesce(func.sum(Invoice.total_amount), 0))
        .where(Invoice.tenant_id == tenant_id)
        .where(Invoice.invoice_date >= since)
    )
    return float(result.scalar_one())


async def sum_bills_since(session: AsyncSession, tenant_id: uuid.UUID, since: datetime) -> float:
    result = await session.execute(
        select(func.coalesce(func.sum(Bill.total_amount), 0))
        .where(Bill.tenant_id == tenant_id)
        .where(Bill.bill_date >= since)
    )
    return float(result.scalar_one())


# ── Exceptions queue ─────────────────────────────────────────────────────


async def sum_open_exception_impact(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    exception_type: Optional[str] = None,
) -> float:
    stmt = (
        select(func.coalesce(func.sum(ExceptionItem.impact_amount), 0))
        .where(ExceptionItem.tenant_id == tenant_id)
        .where(ExceptionItem.status == "open")
    )
    if exception_type is not None:
        stmt = stmt.where(ExceptionItem.exception_type == exception_type)
    result = await session.execute(stmt)
    return float(result.scalar_one())


async def count_open_exceptions(session: AsyncSession, tenant_id: uuid.UUID) -> int:
    result = await session.execute(
        select(func.count(ExceptionItem.id))
        .where(ExceptionItem.tenant_id == tenant_id)
        .where(ExceptionItem.status == "open")
    )
    return int(result.scalar_one())


# ── Reconciliation ───────────────────────────────────────────────────────


async def count_outcomes(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    since: datetime,
    outcome: Optional[str] = None,
) -> int:
    """Reconciliation suggestion outcomes created on/after `since`."""
    stmt = (
        select(func.count(ReconciliationOutcome.id))
        .where(ReconciliationOutcome.tenant_id == tenant_id)
        .where(ReconciliationOutcome.created_at >= since)
    )
    if outcome is not None:
        stmt = stmt.where(ReconciliationOutcome.outcome == outcome)
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def count_guardrail_events(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    since: datetime,
    event_type: str,
) -> int:
    result = await session.execute(
        select(func.count(GuardrailEvent.id))
        .where(GuardrailEvent.tenant_id == tenant_id)
        .where(GuardrailEvent.created_at >= since)
        .where(GuardrailEvent.event_type == event_type)
    )
    return int(result.scalar_one())


# ── ML monitoring ────────────────────────────────────────────────────────


async def get_latest_ml_performance(
    session: AsyncSession, tenant_id: uuid.UUID
) -> Optional[MLPerformanceSnapshot]:
    result = await session.execute(
        select(MLPerformanceSnapshot)
        .where(MLPerformanceSnapshot.tenant_id == tenant_id)
        .order_by(MLPerformanceSnapshot.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def count_drift_signals(
    session: AsyncSession, tenant_id: uuid.UUID, severities: Iterable[str]
) -> int:
    result = await session.execute(
        select(func.count(MLDriftSignal.id))
        .where(MLDriftSignal.tenant_id == tenant_id)
        .where(MLDriftSignal.severity.in_(tuple(severities)))
    )
    return int(result.scalar_one())


# ── Approvals ────────────────────────────────────────────────────────────


async def count_pending_approvals(session: AsyncSession, tenant_id: uuid.UUID) -> int:
    result = await session.execute(
        select(func.count(ApprovalRequest.id))
        .where(ApprovalRequest.tenant_id == tenant_id)
        .where(ApprovalRequest.status == "pending")
    )
    return int(result.scalar_one())


async def count_approvals_since(session: AsyncSession, tenant_id: uuid.UUID, since: datetime) -> int:
    result = await session.execute(
        select(func.count(ApprovalRequest.id))
        .where(ApprovalRequest.tenant_id == tenant_id)
        .where(ApprovalRequest.created_at >= since)
    )
    return int(result.scalar_one())
