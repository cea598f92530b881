"""FastAPI application factory"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from fxpay_gateway.api.dependencies import (
    get_audit_sink,
    get_bank_client,
    get_idempotency_guard,
    get_rate_cache,
    get_upstream_rate_client,
    get_velocity_tracker,
)
from fxpay_gateway.api.errors import register_exception_handlers
from fxpay_gateway.api.middleware import RequestIDMiddleware, MetricsMiddleware
from fxpay_gateway.api.v1 import currencies, merchants, payments, settlements
from fxpay_gateway.config import settings
from fxpay_gateway.infrastructure.database.session import SessionLocal, init_db
from fxpay_gateway.infrastructure.observability.logging import setup_logging
from fxpay_gateway.services.completions import CompletionWorker
from fxpay_gateway.services.maintenance import MaintenanceScheduler

# Setup structured logging
setup_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, start periodic jobs, and drain audit deliveries on shutdown"""
    get_audit_sink().attach(asyncio.get_running_loop())
    scheduler = None
    if settings.background_jobs_enabled:
        init_db()
        audit = get_audit_sink()
        worker = CompletionWorker(SessionLocal, get_bank_client(), audit, settings)
        scheduler = MaintenanceScheduler(
            SessionLocal,
            get_rate_cache(),
            get_velocity_tracker(),
            get_idempotency_guard(),
            worker,
            audit,
            get_upstream_rate_client(),
            settings,
        )
        scheduler.start()

    yield

    if scheduler is not None:
        await scheduler.stop()
    await get_audit_sink().drain()


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="FX Payment Gateway",
        description="Cross-currency payment processing and merchant settlement service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(payments.router, prefix="/v1", tags=["payments"])
    app.include_router(settlements.router, prefix="/v1", tags=["settlements"])
    app.include_router(currencies.router, prefix="/v1", tags=["currencies"])
    app.include_router(merchants.router, prefix="/v1", tags=["merchants"])

    return app


app = create_app()
