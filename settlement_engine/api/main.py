"""FastAPI application factory"""

import asyncio
import contextlib
from contextlib import asynccontextmanager
from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from settlement_engine.api.middleware import RequestIDMiddleware, MetricsMiddleware
from settlement_engine.api.v1 import groups, settlements, events
from settlement_engine.infrastructure.clients.processor import PaymentProcessorClient
from settlement_engine.infrastructure.database.session import SessionLocal
from settlement_engine.infrastructure.observability.logging import setup_logging
from settlement_engine.infrastructure.realtime.notifier import RealtimeNotifier
from settlement_engine.services.reconciler import Reconciler
from settlement_engine.config import settings

# Setup structured logging
setup_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the reconciliation sweep; drain realtime subscribers on shutdown"""
    task = None
    if app.state.reconciler_enabled:
        reconciler = Reconciler(SessionLocal, app.state.notifier, PaymentProcessorClient())
        task = asyncio.create_task(reconciler.run_forever())
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await app.state.notifier.close()


def create_app(reconciler_enabled: bool | None = None) -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Settlement Engine",
        description="Group balances, settlement optimization, and settlement lifecycle service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.notifier = RealtimeNotifier()
    app.state.reconciler_enabled = settings.reconciler_enabled if reconciler_enabled is None else reconciler_enabled

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(groups.router, prefix="/v1", tags=["groups"])
    app.include_router(settlements.router, prefix="/v1", tags=["settlements"])
    app.include_router(events.router, prefix="/v1", tags=["events"])

    return app


app = create_app()
