"""
Test fixtures for RiskGov.

Provides:
- Async DB engine per test (SQLite in-memory, shared through StaticPool)
- Two tenants and JWT tokens for every role
- Operational-data and appetite factories
- Authenticated FastAPI test clients with the DB dependency overridden
"""

import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator, Optional

os.environ.setdefault("ENVIRONMENT", "testing")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from riskgov.appetite.governance import AppetiteGovernance
from riskgov.appetite.schemas import AppetiteCreateRequest, RuleDefinition
from riskgov.auth.jwt import create_access_token
from riskgov.db.engine import Base
from riskgov.db.models import (
    ApprovalRequest,
    Bill,
    ExceptionItem,
    Invoice,
    ReconciliationOutcome,
    RiskAppetite,
    Tenant,
)

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test."""
    eng = create_async_engine(
        TEST_DB_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a session per test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ── Tenant Fixtures ──────────────────────────────────────────────────────


async def _create_tenant(session_factory, name: str) -> Tenant:
    async with session_factory() as session:
        tenant = Tenant(
            id=uuid.uuid4(),
            name=name,
            slug=f"{name.lower()}-{uuid.uuid4().hex[:8]}",
        )
        session.add(tenant)
        await session.commit()
        return tenant


@pytest_asyncio.fixture
async def tenant_a(session_factory) -> Tenant:
    return await _create_tenant(session_factory, "Alpha")


@pytest_asyncio.fixture
async def tenant_b(session_factory) -> Tenant:
    return await _create_tenant(session_factory, "Beta")


# ── JWT Token Fixtures ──────────────────────────────────────────────────


def make_token(tenant: Tenant, role: str) -> str:
    return create_access_token(
        user_id=f"{role}-{uuid.uuid4().hex[:6]}",
        tenant_id=str(tenant.id),
        email=f"{role}@test.local",
        role=role,
    )


@pytest.fixture
def viewer_token(tenant_a) -> str:
    return make_token(tenant_a, "viewer")


@pytest.fixture
def analyst_token(tenant_a) -> str:
    return make_token(tenant_a, "analyst")


@pytest.fixture
def manager_token(tenant_a) -> str:
    return make_token(tenant_a, "manager")


@pytest.fixture
def admin_token(tenant_a) -> str:
    return make_token(tenant_a, "admin")


@pytest.fixture
def tenant_b_admin_token(tenant_b) -> str:
    return make_token(tenant_b, "admin")


# ── Test Clients ─────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def client_factory(session_factory):
    """
    Build authenticated clients against the app.

    Overrides get_db so the API sees the same data as the fixtures.
    """
    from riskgov.api.deps import get_db
    from riskgov.main import app

    async def _override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _override_get_db

    @asynccontextmanager
    async def _make(token: Optional[str] = None):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
            headers=headers,
        ) as c:
            yield c

    yield _make
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(client_factory, admin_token):
    async with client_factory(admin_token) as c:
        yield c


# ── Sample Data Helpers ──────────────────────────────────────────────────


class DataFactory:
    """Writes operational rows for one test database."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _add_all(self, rows) -> None:
        async with self.session_factory() as session:
            session.add_all(rows)
            await session.commit()

    async def invoices(self, tenant_id, amounts, status="sent", days_ago=5) -> None:
        when = datetime.utcnow() - timedelta(days=days_ago)
        await self._add_all([
            Invoice(
                tenant_id=tenant_id,
                invoice_number=f"INV-{uuid.uuid4().hex[:8]}",
                total_amount=Decimal(str(a)),
                status=status,
                invoice_date=when,
            )
            for a in amounts
        ])

    async def bills(self, tenant_id, amounts, days_ago=5) -> None:
        when = datetime.utcnow() - timedelta(days=days_ago)
        await self._add_all([
            Bill(
                tenant_id=tenant_id,
                bill_number=f"BILL-{uuid.uuid4().hex[:8]}",
                total_amount=Decimal(str(a)),
                bill_date=when,
            )
            for a in amounts
        ])

    async def exceptions(self, tenant_id, amounts, exception_type="AR_OVERDUE", status="open") -> None:
        await self._add_all([
            ExceptionItem(
                tenant_id=tenant_id,
                exception_type=exception_type,
                impact_amount=Decimal(str(a)),
                status=status,
            )
            for a in amounts
        ])

    async def outcomes(self, tenant_id, outcome: str, count: int) -> None:
        await self._add_all([
            ReconciliationOutcome(tenant_id=tenant_id, outcome=outcome)
            for _ in range(count)
        ])

    async def approvals(self, tenant_id, count: int, status="pending") -> None:
        await self._add_all([
            ApprovalRequest(tenant_id=tenant_id, domain="payments", status=status)
            for _ in range(count)
        ])

    async def settled(self, tenant_id, metric_code: str, value: float, minutes_ago: int = 0) -> uuid.UUID:
        """Append a settled BANK observation through the ledger."""
        from riskgov.ledger.schemas import Authority, Provenance, SnapshotCreateRequest, TruthLevel
        from riskgov.ledger.service import FactLedger

        async with self.session_factory() as session:
            observation = await FactLedger().append(
                session,
                tenant_id,
                SnapshotCreateRequest(
                    metric_code=metric_code,
                    value=value,
                    truth_level=TruthLevel.SETTLED,
                    authority=Authority.BANK,
                    as_of=datetime.utcnow() - timedelta(minutes=minutes_ago),
                    derived_from=Provenance(sources=["bank_statement"], formula="closing balance"),
                ),
            )
            await session.commit()
            return observation.id

    async def active_appetite(self, tenant_id, rules: list[dict], name: str = "Baseline") -> RiskAppetite:
        """Create and activate an appetite through the governance service."""
        governance = AppetiteGovernance()
        async with self.session_factory() as session:
            draft = await governance.create_draft(
                session,
                tenant_id,
                AppetiteCreateRequest(name=name, rules=[RuleDefinition(**r) for r in rules]),
            )
            appetite = await governance.activate(session, tenant_id, draft.id)
            await session.commit()
            return appetite

    async def count(self, model, tenant_id=None) -> int:
        async with self.session_factory() as session:
            stmt = select(func.count()).select_from(model)
            if tenant_id is not None:
                stmt = stmt.where(model.tenant_id == tenant_id)
            return int((await session.execute(stmt)).scalar_one())


@pytest.fixture
def data(session_factory) -> DataFactory:
    return DataFactory(session_factory)


def rule(metric_code: str, operator: str, threshold: float, **kwargs) -> dict:
    """Rule definition dict with sensible defaults."""
    return {
        "risk_domain": kwargs.pop("risk_domain", "reconciliation"),
        "metric_code": metric_code,
        "operator": operator,
        "threshold": threshold,
        **kwargs,
    }


@pytest.fixture
def make_rule():
    return rule

