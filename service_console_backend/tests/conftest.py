from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import AsyncIterator
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

import httpx
import pytest

from src.api.config import BackendConfig
from src.api.errors import NotFoundError
from src.api.schemas.instances import ServiceKind
from src.api.schemas.metrics import MetricSample


def make_config(**overrides: Any) -> BackendConfig:
    """BackendConfig for tests: no Mongo, no background loops, no retry sleeps."""
    base = BackendConfig(
        provisioning_api_url="http://orchestrator.test",
        metrics_api_url="http://metrics.test",
        metrics_source="http",
        http_timeout_sec=2.0,
        http_retry_attempts=3,
        http_retry_backoff_sec=0.0,
        health_poll_interval_sec=30,
        cost_refresh_interval_sec=60,
        polling_lease_ttl_sec=120,
        alert_eval_interval_sec=30,
        background_tasks_enabled=False,
        mongo_uri=None,
        mongo_uri_source="unset",
    )
    return replace(base, **overrides)


def db_entry(service_id: str, *, status: str = "running", is_healthy: bool = True, **extra: Any) -> Dict[str, Any]:
    """Raw /db-services record as the orchestrator returns it."""
    doc = {
        "service_id": service_id,
        "node_id": "node-1",
        "ip_address": "10.0.0.5",
        "port": 5432,
        "status": status,
        "is_healthy": is_healthy,
        "created_at": "2026-10-01T08:00:00Z",
        "service_url": f"postgres://10.0.0.5:5432/{service_id}",
    }
    doc.update(extra)
    return doc


class FakeProvisioning:
    """In-memory stand-in for ProvisioningClient."""

    def __init__(self) -> None:
        self.services: Dict[ServiceKind, List[Any]] = {kind: [] for kind in ServiceKind}
        self.health: Dict[str, Union[bool, Exception]] = {}
        self.calls: Counter = Counter()
        self.removed: List[str] = []
        self.launched: List[Dict[str, Any]] = []
        self.list_gate: Optional[asyncio.Event] = None
        self.probe_gates: Dict[str, asyncio.Event] = {}
        self.probe_started: Dict[str, asyncio.Event] = {}
        self.launch_result: Optional[Dict[str, Any]] = None

    async def list_services(self, kind: ServiceKind) -> List[Any]:
        self.calls[f"list:{kind.value}"] += 1
        if self.list_gate is not None:
            await self.list_gate.wait()
        return list(self.services[kind])

    async def launch(self, kind: ServiceKind, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self.calls["launch"] += 1
        self.launched.append({"kind": kind, **(payload or {})})
        return dict(self.launch_result or {})

    async def remove(self, kind: ServiceKind, service_id: str) -> Dict[str, Any]:
        self.calls["remove"] += 1
        self.removed.append(service_id)
        self.services[kind] = [e for e in self.services[kind] if not (isinstance(e, dict) and e.get("service_id") == service_id)]
        return {"message": "removed"}

    async def check_health(self, kind: ServiceKind, service_id: str) -> Dict[str, Any]:
        self.calls[f"health:{service_id}"] += 1
        started = self.probe_started.get(service_id)
        if started is not None:
            started.set()
        gate = self.probe_gates.get(service_id)
        if gate is not None:
            await gate.wait()
        outcome = self.health.get(service_id, True)
        if isinstance(outcome, Exception):
            raise outcome
        return {"service_id": service_id, "is_healthy": outcome, "last_check": None}

    async def get_service(self, kind: ServiceKind, service_id: str) -> Dict[str, Any]:
        for entry in self.services[kind]:
            if isinstance(entry, dict) and entry.get("service_id") == service_id:
                return entry
        raise NotFoundError(f"service {service_id} not found")


class FakeMetricsSource:
    """Returns every sample of a service regardless of window; the engine does the filtering."""

    def __init__(self) -> None:
        self.samples: List[MetricSample] = []
        self.calls = 0
        self.gate: Optional[asyncio.Event] = None
        self.fetch_started: Optional[asyncio.Event] = None

    def add(self, service_id: str, metric_type: str, ts: datetime, value: float) -> None:
        self.samples.append(MetricSample(service_id=service_id, metric_type=metric_type, value=value, timestamp=ts))

    def add_series(
        self,
        service_id: str,
        metric_type: str,
        values: List[float],
        *,
        end: Optional[datetime] = None,
        step: timedelta = timedelta(seconds=10),
    ) -> None:
        """Add values ending at `end` (newest last), `step` apart."""
        end = end or datetime.now(timezone.utc)
        for i, value in enumerate(values):
            self.add(service_id, metric_type, end - step * (len(values) - 1 - i), value)

    def clear(self, service_id: Optional[str] = None) -> None:
        self.samples = [s for s in self.samples if service_id is not None and s.service_id != service_id]

    async def get_service_metrics(
        self,
        service_id: str,
        metric_type: Optional[str],
        start: datetime,
        end: datetime,
    ) -> List[MetricSample]:
        self.calls += 1
        if self.fetch_started is not None:
            self.fetch_started.set()
        if self.gate is not None:
            await self.gate.wait()
        return [s for s in self.samples if s.service_id == service_id]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def fake_provisioning() -> FakeProvisioning:
    return FakeProvisioning()


@pytest.fixture
def fake_metrics() -> FakeMetricsSource:
    return FakeMetricsSource()


@pytest.fixture
def app(fake_provisioning: FakeProvisioning, fake_metrics: FakeMetricsSource):
    """
    FastAPI app wired to in-memory fakes.

    No Mongo and no background loops; tests drive polling and evaluation explicitly.
    """
    from src.api.main import create_app

    return create_app(make_config(), provisioning=fake_provisioning, metrics_source=fake_metrics)


@pytest.fixture
def state(app):
    from src.api.state import get_state

    return get_state(app)


@pytest.fixture
async def async_client(app) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client bound to the FastAPI ASGI app."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
