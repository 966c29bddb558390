from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from src.api.config import sanitize_mongo_uri
from src.api.schemas.common import HealthResponse, utc_now
from src.api.state import get_state

router = APIRouter(tags=["Health"])


class MongoConnectivityResponse(BaseModel):
    """Response model for backend↔Mongo connectivity diagnostics."""

    configured: bool = Field(..., description="Whether MongoDB persistence is enabled (BACKEND_MONGO_URI set).")
    ok: bool = Field(..., description="Whether the backend can successfully ping MongoDB (false when not configured).")
    mongo_uri_source: str = Field(..., description="Which source provided the effective MongoDB URI.")
    mongo_uri_sanitized: Optional[str] = Field(default=None, description="MongoDB URI with credentials masked.")
    timestamp: str = Field(..., description="UTC timestamp when the check was performed (ISO string).")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Optional debug metadata.")


class ConfigDiagnosticsResponse(BaseModel):
    """Effective runtime configuration (no secrets)."""

    provisioning_api_url: str = Field(..., description="Orchestrator base URL.")
    metrics_api_url: str = Field(..., description="Metrics store base URL (used when metrics_source=http).")
    metrics_source: str = Field(..., description="http | mongo")
    http_timeout_sec: float
    http_retry_attempts: int
    http_retry_backoff_sec: float
    health_poll_interval_sec: int
    cost_refresh_interval_sec: int
    polling_lease_ttl_sec: int
    alert_eval_interval_sec: int
    background_tasks_enabled: bool
    persistence_enabled: bool
    timestamp: str = Field(..., description="UTC timestamp when the diagnostics were produced (ISO string).")


@router.get(
    "/",
    response_model=HealthResponse,
    summary="Health check",
    description="Basic service liveness check used by deployment and the frontend.",
    operation_id="health_check",
)
def health_check() -> HealthResponse:
    """Return service liveness status."""
    return HealthResponse(status="ok", message="Healthy", timestamp=utc_now())


@router.get(
    "/api/health/mongo",
    response_model=MongoConnectivityResponse,
    summary="Mongo connectivity check",
    description="Pings the optional persistence MongoDB. Credentials are masked; reports configured=false when unset.",
    operation_id="mongo_connectivity_check",
)
def mongo_connectivity_check(request: Request) -> MongoConnectivityResponse:
    """Connectivity check endpoint to validate backend↔Mongo and report which URI source is being used."""
    state = get_state(request.app)
    if state.mongo is None or not state.config.mongo_uri:
        return MongoConnectivityResponse(
            configured=False,
            ok=False,
            mongo_uri_source=state.config.mongo_uri_source,
            timestamp=utc_now().isoformat(),
        )

    return MongoConnectivityResponse(
        configured=True,
        ok=state.mongo.ping(),
        mongo_uri_source=state.config.mongo_uri_source,
        mongo_uri_sanitized=sanitize_mongo_uri(state.config.mongo_uri),
        timestamp=utc_now().isoformat(),
        meta={},
    )


@router.get(
    "/api/health/config",
    response_model=ConfigDiagnosticsResponse,
    summary="Configuration diagnostics",
    description="Reports collaborator URLs, retry, polling and alert cadence settings (no secrets).",
    operation_id="config_diagnostics",
)
def config_diagnostics(request: Request) -> ConfigDiagnosticsResponse:
    """Return the effective configuration for troubleshooting."""
    cfg = get_state(request.app).config
    return ConfigDiagnosticsResponse(
        provisioning_api_url=cfg.provisioning_api_url,
        metrics_api_url=cfg.metrics_api_url,
        metrics_source=cfg.metrics_source,
        http_timeout_sec=float(cfg.http_timeout_sec),
        http_retry_attempts=int(cfg.http_retry_attempts),
        http_retry_backoff_sec=float(cfg.http_retry_backoff_sec),
        health_poll_interval_sec=int(cfg.health_poll_interval_sec),
        cost_refresh_interval_sec=int(cfg.cost_refresh_interval_sec),
        polling_lease_ttl_sec=int(cfg.polling_lease_ttl_sec),
        alert_eval_interval_sec=int(cfg.alert_eval_interval_sec),
        background_tasks_enabled=bool(cfg.background_tasks_enabled),
        persistence_enabled=bool(cfg.mongo_uri),
        timestamp=utc_now().isoformat(),
    )
