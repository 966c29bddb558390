from __future__ import annotations

import asyncio
import logging
import os
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api.clients.metrics_store import MetricsSource
from src.api.clients.provisioning import ProvisioningClient
from src.api.config import BackendConfig, load_config
from src.api.errors import ConsoleError
from src.api.routers import alerts, billing, dashboards, health, instances, metrics, polling
from src.api.schemas.common import ErrorResponse
from src.api.services.alerts_evaluator import alerts_evaluator_loop
from src.api.services.polling import health_poller_loop
from src.api.state import get_state, init_state

openapi_tags = [
    {"name": "Health", "description": "Service health and liveness."},
    {"name": "Instances", "description": "Provisioned backing services across all kinds: list, launch, probe, remove."},
    {"name": "Metrics", "description": "Window aggregates, chart timeseries and query views over service metrics."},
    {"name": "Alerts", "description": "Threshold alert rules and the alerts they raise."},
    {"name": "Billing", "description": "Cost forecast, spending limits and usage bands."},
    {"name": "Dashboards", "description": "Named collections of widgets."},
    {"name": "Polling", "description": "Health polling leases."},
]

logger = logging.getLogger(__name__)


def _env_frontend_url() -> str | None:
    # Support both:
    # - standardized: FRONTEND_URL
    # - legacy: REACT_APP_FRONTEND_URL
    return os.getenv("FRONTEND_URL") or os.getenv("REACT_APP_FRONTEND_URL")


def _env_cors_extra_origins() -> List[str]:
    # Comma-separated list for preview deployments, etc.
    raw = os.getenv("CORS_ALLOW_ORIGINS") or ""
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    return parts


def _allowed_origins() -> List[str]:
    origins: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
    frontend_url = _env_frontend_url()
    if frontend_url:
        origins.append(frontend_url)
    origins.extend(_env_cors_extra_origins())

    # De-dupe while preserving order
    seen = set()
    return [o for o in origins if not (o in seen or seen.add(o))]


async def _console_error_handler(request: Request, exc: ConsoleError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.detail)
    body = ErrorResponse(detail=exc.detail, code=exc.code, meta=exc.meta)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))


async def _stop_task(app: FastAPI, name: str) -> None:
    state = get_state(app)
    shutdown = getattr(app.state, f"_{name}_shutdown", None)
    if shutdown is not None:
        shutdown.set()
    task = state.tasks.pop(name, None)
    if task is not None:
        try:
            await asyncio.wait_for(task, timeout=5.0)
        except Exception:
            logger.exception("Error stopping %s task", name)


# PUBLIC_INTERFACE
def create_app(
    config: Optional[BackendConfig] = None,
    *,
    provisioning: Optional[ProvisioningClient] = None,
    metrics_source: Optional[MetricsSource] = None,
) -> FastAPI:
    """Build the FastAPI app; collaborators default to the ones described by `config` (env when omitted)."""
    app = FastAPI(
        title="Service Console API",
        description=(
            "Backend API for the service management console. "
            "Tracks provisioned backing services and their health, aggregates service metrics, "
            "evaluates threshold alerts, forecasts spend and stores dashboards. "
            "MongoDB persistence is enabled when BACKEND_MONGO_URI is set."
        ),
        version="0.1.0",
        openapi_tags=openapi_tags,
    )

    # Initialize typed app state (config + collaborators + services)
    init_state(app, config or load_config(), provisioning=provisioning, metrics_source=metrics_source)
    app.add_exception_handler(ConsoleError, _console_error_handler)

    @app.on_event("startup")
    async def _on_startup() -> None:
        """Startup hook: connect Mongo when configured, hydrate persisted records, start background loops."""
        state = get_state(app)

        if state.mongo is not None:
            # Connect + verify early so a misconfigured Mongo doesn't silently drop writes.
            state.mongo.connect_app()
            if not state.mongo.ping():
                raise RuntimeError("Mongo connectivity check failed during startup. Verify BACKEND_MONGO_URI.")
            state.mongo.init_indexes()
            await state.alerts.hydrate()
            await state.billing.hydrate()
            await state.dashboards.hydrate()

        if not state.config.background_tasks_enabled:
            logger.info("Background tasks disabled (BACKGROUND_TASKS_ENABLED=false)")
            return

        app.state._poller_shutdown = asyncio.Event()
        state.tasks["poller"] = asyncio.create_task(health_poller_loop(state.poller, app.state._poller_shutdown))

        app.state._alerts_shutdown = asyncio.Event()
        state.tasks["alerts"] = asyncio.create_task(alerts_evaluator_loop(state.evaluator, app.state._alerts_shutdown))

    @app.on_event("shutdown")
    async def _on_shutdown() -> None:
        """Shutdown hook: stop loops, close HTTP clients and Mongo connections."""
        state = get_state(app)

        await _stop_task(app, "poller")
        await _stop_task(app, "alerts")

        for client in (state.provisioning, state.metrics_source):
            aclose = getattr(client, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    logger.exception("Error closing %s", type(client).__name__)

        if state.mongo is not None:
            state.mongo.close()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(instances.router)
    app.include_router(metrics.router)
    app.include_router(alerts.router)
    app.include_router(billing.router)
    app.include_router(dashboards.router)
    app.include_router(polling.router)
    return app


app = create_app()
