from __future__ import annotations

from fastapi import APIRouter, Path, Request, status

from src.api.schemas.billing import (
    CostForecast,
    ForecastRequest,
    SpendingLimit,
    SpendingLimitIn,
    SpendingLimitListResponse,
    SpendingPeriod,
    UsageReport,
    UsageRequest,
)
from src.api.schemas.common import ErrorResponse
from src.api.services import billing_service
from src.api.state import get_state

router = APIRouter(prefix="/api/billing", tags=["Billing"])


@router.post(
    "/forecast",
    response_model=CostForecast,
    responses={400: {"model": ErrorResponse}},
    summary="Forecast cost",
    description="Project period spend from spend so far (daily average × total days).",
    operation_id="forecast_cost",
)
def forecast_cost(payload: ForecastRequest) -> CostForecast:
    """Compute a cost forecast from explicit inputs."""
    return billing_service.forecast(payload.current_cost, payload.elapsed_days, payload.total_days)


@router.get(
    "/limits",
    response_model=SpendingLimitListResponse,
    summary="List spending limits",
    description="List configured spending limits (at most one per period).",
    operation_id="list_spending_limits",
)
def list_limits(request: Request) -> SpendingLimitListResponse:
    """List spending limits."""
    items = get_state(request.app).billing.list_limits()
    return SpendingLimitListResponse(items=items, total=len(items))


@router.get(
    "/limits/{period}",
    response_model=SpendingLimit,
    responses={404: {"model": ErrorResponse}},
    summary="Get spending limit",
    description="Fetch the spending limit of one period.",
    operation_id="get_spending_limit",
)
def get_limit(request: Request, period: SpendingPeriod = Path(..., description="hourly|daily|monthly")) -> SpendingLimit:
    """Get one spending limit."""
    return get_state(request.app).billing.get_limit(period)


@router.put(
    "/limits/{period}",
    response_model=SpendingLimit,
    responses={400: {"model": ErrorResponse}},
    summary="Set spending limit",
    description="Create or replace the spending limit of a period.",
    operation_id="set_spending_limit",
)
async def set_limit(
    request: Request,
    payload: SpendingLimitIn,
    period: SpendingPeriod = Path(..., description="hourly|daily|monthly"),
) -> SpendingLimit:
    """Set a spending limit."""
    return await get_state(request.app).billing.set_limit(period, payload)


@router.delete(
    "/limits/{period}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    summary="Delete spending limit",
    description="Delete the spending limit of a period.",
    operation_id="delete_spending_limit",
)
async def delete_limit(request: Request, period: SpendingPeriod = Path(..., description="hourly|daily|monthly")) -> None:
    """Delete a spending limit."""
    await get_state(request.app).billing.delete_limit(period)
    return None


@router.post(
    "/usage",
    response_model=UsageReport,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Usage report",
    description=(
        "Sum cost samples of the given services over the current calendar-month billing period, "
        "forecast the period and band spend against every configured limit."
    ),
    operation_id="usage_report",
)
async def usage_report(request: Request, payload: UsageRequest) -> UsageReport:
    """Build a usage report."""
    return await get_state(request.app).billing.usage(payload)
