from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from src.api.clients.metrics_store import MetricsSource
from src.api.errors import ValidationError
from src.api.schemas.common import as_utc
from src.api.schemas.metrics import AggregationFunction, MetricSample, MetricValue

logger = logging.getLogger(__name__)


def _unit_for(metric_type: str) -> str:
    if metric_type in ("response_time", "latency_ms"):
        return "ms"
    if metric_type in ("cpu_usage", "memory_usage", "disk_usage", "error_rate"):
        return "%"
    if metric_type in ("cost",):
        return "USD"
    if metric_type in ("requests_per_sec",):
        return "req/s"
    return "count"


# PUBLIC_INTERFACE
def parse_function(token: Union[str, AggregationFunction]) -> AggregationFunction:
    """Case-insensitive lookup in the closed function set; anything else is a ValidationError."""
    if isinstance(token, AggregationFunction):
        return token
    key = str(token or "").strip().upper()
    try:
        return AggregationFunction(key)
    except ValueError:
        allowed = ", ".join(f.value for f in AggregationFunction)
        raise ValidationError(f"unknown aggregation function {token!r} (expected one of {allowed})") from None


def _p95(values: Sequence[float]) -> float:
    ordered = sorted(values)
    n = len(ordered)
    index = min(max(int(math.floor(n * 0.95)), 0), n - 1)
    return ordered[index]


_REDUCERS: Dict[AggregationFunction, Callable[[Sequence[float]], float]] = {
    AggregationFunction.MIN: min,
    AggregationFunction.MAX: max,
    AggregationFunction.SUM: math.fsum,
    AggregationFunction.AVG: lambda vs: math.fsum(vs) / len(vs),
    AggregationFunction.P95: _p95,
    AggregationFunction.COUNT: lambda vs: float(len(vs)),
    # Values arrive in timestamp order.
    AggregationFunction.LAST: lambda vs: vs[-1],
}


# PUBLIC_INTERFACE
def aggregate_values(values: Sequence[float], function: Union[str, AggregationFunction]) -> float:
    """
    Reduce timestamp-ordered values with `function`.

    An empty window yields 0 for every function (COUNT is n, so 0 as well).
    """
    fn = parse_function(function)
    if not values:
        return 0.0
    return float(_REDUCERS[fn](list(values)))


# PUBLIC_INTERFACE
def samples_in_window(
    samples: Sequence[MetricSample],
    metric_type: str,
    start: datetime,
    end: datetime,
) -> List[MetricSample]:
    """Samples of `metric_type` with start <= timestamp <= end, ordered by timestamp."""
    start, end = as_utc(start), as_utc(end)
    picked = [s for s in samples if s.metric_type == metric_type and start <= as_utc(s.timestamp) <= end]
    picked.sort(key=lambda s: as_utc(s.timestamp))
    return picked


def _ordered_window(start: datetime, end: datetime) -> Tuple[datetime, datetime]:
    start, end = as_utc(start), as_utc(end)
    if start > end:
        start, end = end, start
    return start, end


@dataclass(frozen=True)
class AggregateOutcome:
    value: float
    sample_count: int


class MetricsQueryEngine:
    """Window aggregation and chart bucketing over a MetricsSource."""

    def __init__(self, source: MetricsSource):
        self._source = source

    async def fetch_window(self, service_id: str, metric_type: str, start: datetime, end: datetime) -> List[MetricSample]:
        start, end = _ordered_window(start, end)
        raw = await self._source.get_service_metrics(service_id, metric_type, start, end)
        # The store may over-fetch; filter defensively on type and window.
        return samples_in_window(raw, metric_type, start, end)

    # PUBLIC_INTERFACE
    async def aggregate(
        self,
        service_id: str,
        metric_type: str,
        start: datetime,
        end: datetime,
        function: Union[str, AggregationFunction],
    ) -> AggregateOutcome:
        """Scalar aggregate of one metric over [start, end]."""
        fn = parse_function(function)
        samples = await self.fetch_window(service_id, metric_type, start, end)
        value = aggregate_values([s.value for s in samples], fn)
        logger.debug("aggregate %s(%s) for %s over %s samples = %s", fn.value, metric_type, service_id, len(samples), value)
        return AggregateOutcome(value=value, sample_count=len(samples))

    # PUBLIC_INTERFACE
    async def timeseries(
        self,
        service_id: str,
        metric_type: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        step_seconds: int = 60,
        function: Union[str, AggregationFunction] = AggregationFunction.AVG,
    ) -> Tuple[List[MetricValue], str]:
        """Bucket samples into `step_seconds` buckets and reduce each; returns (points, unit)."""
        fn = parse_function(function)
        end = end or datetime.now(timezone.utc)
        start = start or (as_utc(end) - timedelta(hours=1))
        samples = await self.fetch_window(service_id, metric_type, start, end)

        step = max(10, int(step_seconds))
        bucket_ms = step * 1000

        buckets: Dict[int, List[float]] = {}
        bucket_ts: Dict[int, datetime] = {}
        for s in samples:
            ts = as_utc(s.timestamp)
            key = int(ts.timestamp() * 1000) // bucket_ms
            buckets.setdefault(key, []).append(s.value)
            # Earliest ts in the bucket is the display timestamp.
            bucket_ts.setdefault(key, ts)

        points = [MetricValue(ts=bucket_ts[k], value=aggregate_values(buckets[k], fn)) for k in sorted(buckets)]
        return points, _unit_for(metric_type)
