"""
FastAPI main application for the dispatch coordination core.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dispatch_core.agents.escalation_monitor import EscalationMonitorAgent
from dispatch_core.api.routes import audit, cases, hospitals
from dispatch_core.core.clock import utcnow
from dispatch_core.core.config import Config
from dispatch_core.core.event_bus import EventBus
from dispatch_core.core.exceptions import (
    CaseNotFound,
    DispatchError,
    IllegalTransition,
    StateConflict,
    TransientStoreError,
    Unauthorized,
    ValidationFailure,
)
from dispatch_core.core.rate_limit import RateLimiter
from dispatch_core.core.store import CaseStore, InMemoryCaseStore
from dispatch_core.db.sql_store import SqlCaseStore
from dispatch_core.lifecycle.handover import HandoverProtocol
from dispatch_core.lifecycle.override import OverrideCoordinator
from dispatch_core.lifecycle.state_machine import CaseStateMachine

# Configure logging
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

SERVICE_NAME = "Dispatch Coordination API"
VERSION = "1.0.0"

ERROR_STATUS_CODES = (
    (CaseNotFound, 404),
    (IllegalTransition, 409),
    (StateConflict, 409),
    (Unauthorized, 403),
    (ValidationFailure, 422),
    (TransientStoreError, 503),
)


def status_code_for(error: DispatchError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


def build_store() -> CaseStore:
    """Store selected by STORE_BACKEND ("memory" or "sql")."""
    backend = Config.STORE_BACKEND.lower()
    if backend == "sql":
        return SqlCaseStore(Config.DATABASE_URL)
    if backend != "memory":
        logger.warning(f"Unknown STORE_BACKEND {backend!r}, using in-memory store")
    return InMemoryCaseStore()


def create_app(
    store: Optional[CaseStore] = None,
    rate_limiter: Optional[RateLimiter] = None,
    start_monitor: bool = True
) -> FastAPI:
    """
    Build the API application.

    Args:
        store: Case store to use (built from config when omitted)
        rate_limiter: Limiter for write endpoints
        start_monitor: Run the escalation monitor in the background

    Returns:
        Configured FastAPI app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("Starting dispatch core...")

        case_store = store or build_store()
        event_bus = EventBus()
        state_machine = CaseStateMachine(case_store, event_bus)
        monitor = EscalationMonitorAgent(state_machine, event_bus)

        app.state.store = case_store
        app.state.event_bus = event_bus
        app.state.state_machine = state_machine
        app.state.override_coordinator = OverrideCoordinator(state_machine)
        app.state.handover_protocol = HandoverProtocol(state_machine)
        app.state.escalation_monitor = monitor

        if start_monitor:
            await monitor.start()

        logger.info("Dispatch core started successfully")

        yield

        # Shutdown
        logger.info("Shutting down dispatch core...")
        await monitor.stop()
        event_bus.stop()
        if store is None:
            await case_store.close()
        logger.info("Dispatch core shutdown complete")

    app = FastAPI(
        title=SERVICE_NAME,
        description="Emergency case lifecycle, hospital ranking, escalation and handover",
        version=VERSION,
        lifespan=lifespan
    )
    app.state.rate_limiter = rate_limiter or RateLimiter()

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=Config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError):
        status_code = status_code_for(exc)
        if status_code >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    # ========================
    # Health Endpoints
    # ========================

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": VERSION,
            "timestamp": utcnow().isoformat()
        }

    @app.get("/api/health")
    async def health_check(request: Request):
        """Detailed health check."""
        state = request.app.state
        monitor = getattr(state, "escalation_monitor", None)
        event_bus = getattr(state, "event_bus", None)
        case_store = getattr(state, "store", None)
        return {
            "status": "healthy",
            "components": {
                "store": type(case_store).__name__ if case_store else "not initialized",
                "event_bus": "running" if event_bus else "not initialized",
                "escalation_monitor": monitor.get_monitor_stats() if monitor else "not initialized",
            },
            "store_stats": await case_store.get_stats() if case_store else {},
            "subscribers": event_bus.get_subscriber_count() if event_bus else 0,
            "config": {
                "debug": Config.DEBUG,
                "store_backend": Config.STORE_BACKEND,
                "golden_hour_minutes": Config.GOLDEN_HOUR_MINUTES,
            }
        }

    app.include_router(cases.router, prefix="/api/cases", tags=["cases"])
    app.include_router(hospitals.router, prefix="/api/hospitals", tags=["hospitals"])
    app.include_router(audit.router, prefix="/api/audit", tags=["audit"])
    return app


app = create_app()
