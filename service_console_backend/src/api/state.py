from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

from fastapi import FastAPI

from src.api.clients.metrics_store import HttpMetricsStore, MetricsSource, MongoMetricsStore
from src.api.clients.provisioning import ProvisioningClient
from src.api.config import BackendConfig
from src.api.db.mongo import DocumentStore, MongoManager
from src.api.services.alerts_evaluator import AlertEvaluator
from src.api.services.alerts_service import AlertStore
from src.api.services.billing_service import BillingService
from src.api.services.dashboards_service import DashboardRegistry
from src.api.services.health import HealthStateMachine
from src.api.services.metrics_engine import MetricsQueryEngine
from src.api.services.polling import HealthPoller
from src.api.services.query_views import QueryViewRegistry
from src.api.services.registry import InstanceStore, ServiceRegistry


@dataclass
class AppState:
    """Typed app.state container for shared singletons."""

    config: BackendConfig
    mongo: Optional[MongoManager]
    provisioning: ProvisioningClient
    metrics_source: MetricsSource
    registry: ServiceRegistry
    health: HealthStateMachine
    poller: HealthPoller
    engine: MetricsQueryEngine
    queries: QueryViewRegistry
    alerts: AlertStore
    evaluator: AlertEvaluator
    billing: BillingService
    dashboards: DashboardRegistry
    tasks: Dict[str, object] = field(default_factory=dict)  # asyncio.Task values, kept loose


def _persist(mongo: Optional[MongoManager], collection: str, key: str = "id") -> Optional[DocumentStore]:
    return DocumentStore(mongo, collection, key=key) if mongo is not None else None


# PUBLIC_INTERFACE
def init_state(
    app: FastAPI,
    config: BackendConfig,
    *,
    provisioning: Optional[ProvisioningClient] = None,
    metrics_source: Optional[MetricsSource] = None,
) -> AppState:
    """
    Build the object graph and attach it to app.state.

    `provisioning` and `metrics_source` override the collaborators built from config (tests pass fakes).
    """
    mongo = MongoManager(config.mongo_uri) if config.mongo_uri else None

    if provisioning is None:
        provisioning = ProvisioningClient.from_config(config)
    if metrics_source is None:
        if config.metrics_source == "mongo" and mongo is not None:
            metrics_source = MongoMetricsStore(mongo)
        else:
            metrics_source = HttpMetricsStore.from_config(config)

    store = InstanceStore()
    health = HealthStateMachine(store)
    registry = ServiceRegistry(provisioning, store, health)
    poller = HealthPoller(
        registry,
        health,
        interval_sec=config.health_poll_interval_sec,
        default_ttl_sec=config.polling_lease_ttl_sec,
    )
    engine = MetricsQueryEngine(metrics_source)
    alerts = AlertStore(_persist(mongo, "alert_rules"), _persist(mongo, "alerts"))

    state = AppState(
        config=config,
        mongo=mongo,
        provisioning=provisioning,
        metrics_source=metrics_source,
        registry=registry,
        health=health,
        poller=poller,
        engine=engine,
        queries=QueryViewRegistry(engine),
        alerts=alerts,
        evaluator=AlertEvaluator(engine, alerts, store, interval_sec=config.alert_eval_interval_sec),
        billing=BillingService(
            engine,
            refresh_interval_sec=config.cost_refresh_interval_sec,
            persist=_persist(mongo, "spending_limits", key="period"),
        ),
        dashboards=DashboardRegistry(_persist(mongo, "dashboards")),
    )
    app.state.state = state
    return state


# PUBLIC_INTERFACE
def get_state(app: FastAPI) -> AppState:
    """Fetch typed AppState from a FastAPI app."""
    return app.state.state  # type: ignore[attr-defined]
