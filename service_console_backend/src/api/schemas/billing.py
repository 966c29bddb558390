from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class SpendingPeriod(str, Enum):
    """Budget period of a spending limit."""

    hourly = "hourly"
    daily = "daily"
    monthly = "monthly"


class UsageBand(str, Enum):
    """Usage band of spend against a limit."""

    green = "green"
    yellow = "yellow"
    red = "red"


class SpendingLimit(BaseModel):
    """A budget cap over a period."""

    period: SpendingPeriod = Field(..., description="hourly | daily | monthly")
    amount: float = Field(..., gt=0, allow_inf_nan=False, description="Budget amount for the period.")
    name: Optional[str] = Field(default=None, description="Optional display name.")


class SpendingLimitIn(BaseModel):
    """Request body for setting the limit of a period."""

    amount: float = Field(..., gt=0, allow_inf_nan=False, description="Budget amount for the period.")
    name: Optional[str] = Field(default=None, description="Optional display name.")


class SpendingLimitListResponse(BaseModel):
    items: List[SpendingLimit]
    total: int = Field(..., ge=0)


class CostForecast(BaseModel):
    """Derived projection of period spend."""

    current_cost: float
    projected_cost: float
    daily_average: float
    remaining_days: float


class ForecastRequest(BaseModel):
    """Explicit forecast inputs."""

    current_cost: float = Field(..., ge=0, allow_inf_nan=False, description="Spend so far in the billing period.")
    elapsed_days: float = Field(..., allow_inf_nan=False, description="Days elapsed in the period; values below 1 are treated as 1.")
    total_days: float = Field(..., gt=0, allow_inf_nan=False, description="Total days in the billing period.")


class UsageRequest(BaseModel):
    """Derive spend from `cost` samples of the given services over the current billing period."""

    service_ids: List[str] = Field(..., min_length=1, description="Services whose cost samples are summed.")
    metric_type: str = Field("cost", min_length=1, description="Metric key carrying cost samples.")
    as_of: Optional[datetime] = Field(default=None, description="Reference time; defaults to now.")


class LimitUsage(BaseModel):
    """Spend against one limit."""

    period: SpendingPeriod
    amount: float
    spent: float = Field(..., description="Spend inside the limit's own period window.")
    ratio: float
    percentage: float
    band: UsageBand


class UsageReport(BaseModel):
    """Billing-period forecast plus banding against every configured limit."""

    period_start: datetime
    period_end: datetime
    forecast: CostForecast
    limits: List[LimitUsage] = Field(default_factory=list)
    refresh_interval_sec: int = Field(..., description="Suggested refresh cadence for usage views.")
