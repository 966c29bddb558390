from __future__ import annotations

from fastapi import APIRouter, Path, Request, status

from src.api.schemas.common import ErrorResponse
from src.api.schemas.metrics import (
    AggregateRequest,
    AggregateResponse,
    QueryCreate,
    QueryUpdate,
    QueryViewOut,
    TimeseriesRequest,
    TimeseriesResponse,
)
from src.api.services.metrics_engine import parse_function
from src.api.state import get_state

router = APIRouter(prefix="/api/metrics", tags=["Metrics"])


@router.post(
    "/{service_id}/aggregate",
    response_model=AggregateResponse,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Aggregate metric",
    description=(
        "Reduce one metric of a service over [start, end] with MIN, MAX, SUM, AVG, P95, COUNT or LAST. "
        "Empty windows yield 0; unknown functions are rejected."
    ),
    operation_id="aggregate_metric",
)
async def aggregate_metric(
    request: Request,
    payload: AggregateRequest,
    service_id: str = Path(..., description="Service identifier"),
) -> AggregateResponse:
    """Compute a scalar aggregate."""
    fn = parse_function(payload.function)
    outcome = await get_state(request.app).engine.aggregate(service_id, payload.metric_type, payload.start, payload.end, fn)
    return AggregateResponse(
        service_id=service_id,
        metric_type=payload.metric_type,
        function=fn,
        start=payload.start,
        end=payload.end,
        value=outcome.value,
        sample_count=outcome.sample_count,
    )


@router.post(
    "/{service_id}/timeseries",
    response_model=TimeseriesResponse,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Get metrics timeseries",
    description="Bucket samples into step_seconds buckets reduced with the requested function (default AVG).",
    operation_id="get_metrics_timeseries",
)
async def get_timeseries(
    request: Request,
    payload: TimeseriesRequest,
    service_id: str = Path(..., description="Service identifier"),
) -> TimeseriesResponse:
    """Fetch timeseries points for a chart widget."""
    fn = parse_function(payload.function)
    points, unit = await get_state(request.app).engine.timeseries(
        service_id,
        payload.metric_type,
        start=payload.start,
        end=payload.end,
        step_seconds=payload.step_seconds,
        function=fn,
    )
    return TimeseriesResponse(service_id=service_id, metric_type=payload.metric_type, function=fn, points=points, unit=unit)


@router.post(
    "/queries",
    response_model=QueryViewOut,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Open query view",
    description="Open a query view and compute its first value.",
    operation_id="create_query_view",
)
async def create_query(request: Request, payload: QueryCreate) -> QueryViewOut:
    """Open a query view."""
    return await get_state(request.app).queries.create(payload)


@router.get(
    "/queries/{query_id}",
    response_model=QueryViewOut,
    responses={404: {"model": ErrorResponse}},
    summary="Get query view",
    description="Return the view's parameters and its fresh/stale/pending result.",
    operation_id="get_query_view",
)
def get_query(request: Request, query_id: str = Path(..., description="Query view id")) -> QueryViewOut:
    """Get a query view."""
    return get_state(request.app).queries.get(query_id)


@router.patch(
    "/queries/{query_id}",
    response_model=QueryViewOut,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Update query parameters",
    description="Change parameters without recomputing; a computed value stays visible and is marked stale.",
    operation_id="update_query_view",
)
def update_query(
    request: Request,
    payload: QueryUpdate,
    query_id: str = Path(..., description="Query view id"),
) -> QueryViewOut:
    """Patch query parameters."""
    return get_state(request.app).queries.update(query_id, payload)


@router.post(
    "/queries/{query_id}/recompute",
    response_model=QueryViewOut,
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Recompute query view",
    description="Recompute the value for the current parameters.",
    operation_id="recompute_query_view",
)
async def recompute_query(request: Request, query_id: str = Path(..., description="Query view id")) -> QueryViewOut:
    """Recompute a query view."""
    return await get_state(request.app).queries.recompute(query_id)


@router.delete(
    "/queries/{query_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    summary="Close query view",
    description="Drop a query view.",
    operation_id="delete_query_view",
)
def delete_query(request: Request, query_id: str = Path(..., description="Query view id")) -> None:
    """Close a query view."""
    get_state(request.app).queries.delete(query_id)
    return None
