"""
RiskGov: FastAPI Application.

Run: uvicorn riskgov.main:app --host 0.0.0.0 --port 8002 --reload
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from riskgov.api.routers.board_scenarios import router as board_scenarios_router
from riskgov.api.routers.risk_appetite import router as risk_appetite_router
from riskgov.api.routers.snapshots import router as snapshots_router
from riskgov.api.routers.stress_test import router as stress_test_router
from riskgov.config import settings
from riskgov.db.engine import close_db, init_db
from riskgov.errors import register_exception_handlers
from riskgov.logging_config import configure_logging
from riskgov.middleware.error_handler import ErrorHandlerMiddleware
from riskgov.middleware.request_context import RequestContextMiddleware
from riskgov.middleware.tenant import TenantMiddleware

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    configure_logging()
    logger.info("riskgov_starting", version=settings.app_version, environment=settings.environment)
    await init_db()
    yield
    await close_db()
    logger.info("riskgov_shutdown")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="RiskGov",
        description=(
            "# RiskGov: Risk Appetite Governance\n\n"
            "Multi-tenant rule evaluation and enforcement over an append-only fact ledger.\n\n"
            "## Authentication\n"
            "All endpoints except /health require `Authorization: Bearer <JWT>`.\n"
        ),
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_tags=[
            {"name": "health", "description": "Liveness probe"},
            {"name": "risk-appetite", "description": "Rule evaluation, breach detection, enforcement, governance"},
            {"name": "decision-snapshots", "description": "Append-only fact ledger"},
            {"name": "stress-test", "description": "Counterfactual threshold simulation"},
            {"name": "board-scenarios", "description": "Macro scenario projections"},
        ],
    )

    # ── Middleware (last added = outermost) ──────────────────────────────
    app.add_middleware(TenantMiddleware)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(ErrorHandlerMiddleware)

    # CORS outermost so OPTIONS preflight is handled before auth
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # ── Routes ────────────────────────────────────────────────────────
    app.include_router(risk_appetite_router)
    app.include_router(snapshots_router)
    app.include_router(stress_test_router)
    app.include_router(board_scenarios_router)

    @app.get("/health", tags=["health"])
    async def health():
        """Liveness probe. Does not check dependencies."""
        return {
            "status": "ok",
            "version": settings.app_version,
            "service": "riskgov",
        }

    return app


app = create_app()
