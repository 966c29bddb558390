from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import PyMongoError

from src.api.config import BackendConfig
from src.api.db.mongo import MongoManager
from src.api.errors import NotFoundError, TransientNetworkError, ValidationError
from src.api.schemas.metrics import MetricSample
from src.api.services.resilience import RetryPolicy, retry_async

logger = logging.getLogger(__name__)


class MetricsSource(Protocol):
    """The time-series store the engine reads windows from."""

    async def get_service_metrics(
        self,
        service_id: str,
        metric_type: Optional[str],
        start: datetime,
        end: datetime,
    ) -> List[MetricSample]: ...


def _parse_samples(service_id: str, rows: List[Any]) -> List[MetricSample]:
    samples: List[MetricSample] = []
    for row in rows:
        if not isinstance(row, dict):
            raise ValidationError(f"metrics store returned a non-object sample for {service_id}")
        doc = dict(row)
        doc.setdefault("service_id", service_id)
        try:
            samples.append(MetricSample.model_validate(doc))
        except PydanticValidationError as exc:
            raise ValidationError(f"malformed metric sample for {service_id}: {exc.errors()[:1]}") from exc
    return samples


class HttpMetricsStore:
    """httpx client for `GET /metrics/{service_id}?metric_type&start&end`."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_sec: float = 10.0,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_sec
        self._retry_policy = retry_policy or RetryPolicy()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_config(cls, config: BackendConfig) -> "HttpMetricsStore":
        return cls(config.metrics_api_url, timeout_sec=config.http_timeout_sec, retry_policy=RetryPolicy.from_config(config))

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _fetch_once(self, service_id: str, params: Dict[str, str]) -> Any:
        path = f"/metrics/{service_id}"
        try:
            response = await self._http().get(path, params=params)
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"GET {path} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"GET {path} failed: {exc}") from exc
        if response.status_code >= 500:
            raise TransientNetworkError(f"GET {path} returned HTTP {response.status_code}")
        if response.status_code == 404:
            raise NotFoundError(f"no metrics for service {service_id}")
        if response.status_code >= 400:
            raise ValidationError(f"GET {path} returned HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise ValidationError(f"GET {path} returned a non-JSON body", meta={"path": path}) from exc

    # PUBLIC_INTERFACE
    async def get_service_metrics(
        self,
        service_id: str,
        metric_type: Optional[str],
        start: datetime,
        end: datetime,
    ) -> List[MetricSample]:
        """Fetch samples for a window; accepts `{"samples": [...]}` or a bare list."""
        params = {"start": start.isoformat(), "end": end.isoformat()}
        if metric_type:
            params["metric_type"] = metric_type
        body = await retry_async(
            lambda: self._fetch_once(service_id, params),
            policy=self._retry_policy,
            what=f"metrics fetch for {service_id}",
        )
        rows = body.get("samples", []) if isinstance(body, dict) else body
        if not isinstance(rows, list):
            raise ValidationError(f"metrics store returned an unexpected body for {service_id}")
        return _parse_samples(service_id, rows)


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking pymongo calls in a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)


class MongoMetricsStore:
    """
    Reads samples from a `metrics_samples` collection:
      {serviceId, metricType, value, ts, labels}
    """

    def __init__(self, mongo: MongoManager):
        self._mongo = mongo

    # PUBLIC_INTERFACE
    async def get_service_metrics(
        self,
        service_id: str,
        metric_type: Optional[str],
        start: datetime,
        end: datetime,
    ) -> List[MetricSample]:
        """Fetch samples in [start, end] ascending by ts."""
        cols = self._mongo.collections()
        query: Dict[str, Any] = {"serviceId": service_id, "ts": {"$gte": start, "$lte": end}}
        if metric_type:
            query["metricType"] = metric_type
        try:
            docs = await _run_in_thread(
                lambda: list(cols.metrics_samples.find(query, projection={"_id": 0}).sort("ts", 1))
            )
        except PyMongoError as exc:
            logger.exception("metrics_samples query failed for serviceId=%s", service_id)
            raise TransientNetworkError(f"metrics store unavailable: {exc}") from exc
        return _parse_samples(
            service_id,
            [
                {
                    "service_id": d.get("serviceId", service_id),
                    "metric_type": d.get("metricType"),
                    "value": d.get("value"),
                    "timestamp": d.get("ts"),
                    "labels": d.get("labels") or {},
                }
                for d in docs
            ],
        )
