from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class AggregationFunction(str, Enum):
    """Closed set of window reducers."""

    MIN = "MIN"
    MAX = "MAX"
    SUM = "SUM"
    AVG = "AVG"
    P95 = "P95"
    COUNT = "COUNT"
    LAST = "LAST"


class ResultState(str, Enum):
    """Tri-state of a displayed aggregate."""

    fresh = "fresh"
    stale = "stale"
    pending = "pending"


class MetricSample(BaseModel):
    """A single time-series sample from the metrics store."""

    service_id: str = Field(..., description="Service the sample belongs to.")
    metric_type: str = Field(..., description="Metric key (cpu_usage, memory_usage, response_time, error_rate, cost, ...).")
    value: float = Field(..., description="Sample value.")
    timestamp: datetime = Field(..., description="UTC sample timestamp.")
    labels: Dict[str, str] = Field(default_factory=dict, description="Free-form labels.")


class MetricValue(BaseModel):
    """A single chart data point."""

    ts: datetime = Field(..., description="UTC timestamp for the data point.")
    value: float = Field(..., description="Reduced value of the bucket.")


class AggregateRequest(BaseModel):
    """Request body for a one-off aggregate over a window."""

    metric_type: str = Field(..., min_length=1, description="Metric key to aggregate.")
    function: str = Field(..., description="MIN|MAX|SUM|AVG|P95|COUNT|LAST (case-insensitive).")
    start: datetime = Field(..., description="UTC window start (inclusive).")
    end: datetime = Field(..., description="UTC window end (inclusive).")


class AggregateResponse(BaseModel):
    """Scalar aggregate over a window."""

    service_id: str
    metric_type: str
    function: AggregationFunction
    start: datetime
    end: datetime
    value: float = Field(..., description="Aggregate value (0 for an empty window, except COUNT which is n).")
    sample_count: int = Field(..., ge=0, description="Number of samples the value was computed over.")


class TimeseriesRequest(BaseModel):
    """Request body for fetching bucketed timeseries points."""

    metric_type: str = Field(..., min_length=1, description="Metric key to fetch a timeseries for.")
    start: Optional[datetime] = Field(default=None, description="UTC start time (inclusive); defaults to end - 1h.")
    end: Optional[datetime] = Field(default=None, description="UTC end time (inclusive); defaults to now.")
    step_seconds: int = Field(60, ge=10, le=3600, description="Bucket width in seconds.")
    function: str = Field("AVG", description="Reducer applied within each bucket.")


class TimeseriesResponse(BaseModel):
    """Response model for timeseries metric data."""

    service_id: str = Field(..., description="Service the timeseries corresponds to.")
    metric_type: str = Field(..., description="Metric key.")
    function: AggregationFunction = Field(..., description="Reducer applied within each bucket.")
    points: List[MetricValue] = Field(..., description="Ordered list of points for charting.")
    unit: str = Field(..., description="Unit string for display (e.g., 'ms', '%', 'count').")


class QueryParams(BaseModel):
    """Parameters of a metrics query view; together they form the cache key."""

    service_id: str = Field(..., min_length=1)
    metric_type: str = Field(..., min_length=1)
    function: AggregationFunction
    start: datetime
    end: datetime


class QueryCreate(BaseModel):
    """Request body for opening a query view."""

    service_id: str = Field(..., min_length=1)
    metric_type: str = Field(..., min_length=1)
    function: str = Field(..., description="MIN|MAX|SUM|AVG|P95|COUNT|LAST (case-insensitive).")
    start: datetime
    end: datetime


class QueryUpdate(BaseModel):
    """Partial parameter change for a query view; never recomputes by itself."""

    service_id: Optional[str] = Field(default=None, min_length=1)
    metric_type: Optional[str] = Field(default=None, min_length=1)
    function: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class QueryViewOut(BaseModel):
    """Current parameters plus the tri-state result of a query view."""

    id: str
    params: QueryParams
    state: ResultState
    value: Optional[float] = Field(default=None, description="Last computed value; kept while stale.")
    computed_at: Optional[datetime] = None
    computed_for: Optional[QueryParams] = Field(default=None, description="Parameters the shown value was computed with.")
