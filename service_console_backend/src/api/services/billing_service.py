from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Tuple, Union

from src.api.db.mongo import DocumentStore, WriteThrough
from src.api.errors import NotFoundError, ValidationError
from src.api.schemas.billing import (
    CostForecast,
    LimitUsage,
    SpendingLimit,
    SpendingLimitIn,
    SpendingPeriod,
    UsageBand,
    UsageReport,
    UsageRequest,
)
from src.api.schemas.common import as_utc, utc_now
from src.api.schemas.metrics import AggregationFunction
from src.api.services.metrics_engine import MetricsQueryEngine

logger = logging.getLogger(__name__)

Number = Union[int, float, str, Decimal]

RED_ABOVE = Decimal("0.80")
YELLOW_ABOVE = Decimal("0.60")


def _d(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        result = value
    else:
        # str() keeps 42.6 as 42.6 instead of its binary expansion.
        try:
            result = Decimal(str(value))
        except InvalidOperation as exc:
            raise ValidationError(f"not a number: {value!r}") from exc
    if not result.is_finite():
        raise ValidationError(f"amount must be a finite number, got {value!r}")
    return result


# PUBLIC_INTERFACE
def forecast(current_cost: Number, elapsed_days: Number, total_days: Number) -> CostForecast:
    """
    Project period spend from spend so far.

    elapsed_days below 1 counts as 1; remaining_days never goes negative.
    """
    cost = _d(current_cost)
    total = _d(total_days)
    elapsed = max(_d(elapsed_days), Decimal(1))
    if cost < 0:
        raise ValidationError("current_cost must be >= 0")
    if total <= 0:
        raise ValidationError("total_days must be > 0")

    daily_average = cost / elapsed
    projected = daily_average * total
    remaining = max(total - elapsed, Decimal(0))
    return CostForecast(
        current_cost=float(cost),
        projected_cost=float(projected),
        daily_average=float(daily_average),
        remaining_days=float(remaining),
    )


# PUBLIC_INTERFACE
def usage_band(current_cost: Number, limit_amount: Number) -> Tuple[Decimal, UsageBand]:
    """Return (ratio, band): red when ratio > 0.80, yellow when ratio > 0.60, else green."""
    amount = _d(limit_amount)
    if amount <= 0:
        raise ValidationError("limit amount must be > 0")
    ratio = _d(current_cost) / amount
    if ratio > RED_ABOVE:
        return ratio, UsageBand.red
    if ratio > YELLOW_ABOVE:
        return ratio, UsageBand.yellow
    return ratio, UsageBand.green


@dataclass(frozen=True)
class BillingPeriod:
    start: datetime
    end: datetime
    elapsed_days: int
    total_days: int


def _month_start(ts: datetime) -> datetime:
    return ts.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _next_month_start(ts: datetime) -> datetime:
    start = _month_start(ts)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


# PUBLIC_INTERFACE
def billing_period(now: Optional[datetime] = None) -> BillingPeriod:
    """Calendar-month bounds around `now`; elapsed days are rounded up and at least 1."""
    now = as_utc(now or utc_now())
    start = _month_start(now)
    end = _next_month_start(now)
    elapsed = math.ceil((now - start).total_seconds() / 86400.0)
    return BillingPeriod(start=start, end=end, elapsed_days=max(1, elapsed), total_days=(end - start).days)


def period_window_start(period: SpendingPeriod, now: datetime) -> datetime:
    now = as_utc(now)
    if period == SpendingPeriod.hourly:
        return now.replace(minute=0, second=0, microsecond=0)
    if period == SpendingPeriod.daily:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    return _month_start(now)


class BillingService(WriteThrough):
    """Spending limits per period and usage reports derived from cost samples."""

    def __init__(
        self,
        engine: MetricsQueryEngine,
        *,
        refresh_interval_sec: int = 60,
        persist: Optional[DocumentStore] = None,
    ):
        self._engine = engine
        self._refresh_interval = int(refresh_interval_sec)
        self._persist = persist
        self._limits: Dict[SpendingPeriod, SpendingLimit] = {}

    async def hydrate(self) -> None:
        if self._persist is None:
            return
        for doc in await self._persist.load_all():
            limit = SpendingLimit.model_validate(doc)
            self._limits[limit.period] = limit
        logger.info("Hydrated %s spending limits", len(self._limits))

    # PUBLIC_INTERFACE
    def list_limits(self) -> List[SpendingLimit]:
        order = list(SpendingPeriod)
        return sorted(self._limits.values(), key=lambda lim: order.index(lim.period))

    # PUBLIC_INTERFACE
    def get_limit(self, period: SpendingPeriod) -> SpendingLimit:
        limit = self._limits.get(period)
        if limit is None:
            raise NotFoundError(f"no {period.value} spending limit", meta={"period": period.value})
        return limit

    # PUBLIC_INTERFACE
    async def set_limit(self, period: SpendingPeriod, payload: SpendingLimitIn) -> SpendingLimit:
        """Create or replace the single limit of `period`."""
        if payload.amount <= 0:
            raise ValidationError("limit amount must be > 0")
        limit = SpendingLimit(period=period, amount=payload.amount, name=payload.name)
        self._limits[period] = limit
        await self._save(self._persist, limit.model_dump(mode="json"))
        logger.info("Spending limit set: %s=%s", period.value, limit.amount)
        return limit

    # PUBLIC_INTERFACE
    async def delete_limit(self, period: SpendingPeriod) -> None:
        self.get_limit(period)
        self._limits.pop(period, None)
        await self._drop(self._persist, period.value)

    async def _spend(self, service_ids: List[str], metric_type: str, start: datetime, end: datetime) -> Decimal:
        outcomes = await asyncio.gather(
            *(self._engine.aggregate(sid, metric_type, start, end, AggregationFunction.SUM) for sid in service_ids)
        )
        return sum((_d(o.value) for o in outcomes), Decimal(0))

    # PUBLIC_INTERFACE
    async def usage(self, req: UsageRequest) -> UsageReport:
        """Forecast the current billing period and band spend against every configured limit."""
        now = as_utc(req.as_of or utc_now())
        period = billing_period(now)
        service_ids = list(dict.fromkeys(req.service_ids))

        month_spend = await self._spend(service_ids, req.metric_type, period.start, now)
        usages: List[LimitUsage] = []
        for limit in self.list_limits():
            if limit.period == SpendingPeriod.monthly:
                spent = month_spend
            else:
                spent = await self._spend(service_ids, req.metric_type, period_window_start(limit.period, now), now)
            ratio, band = usage_band(spent, limit.amount)
            usages.append(
                LimitUsage(
                    period=limit.period,
                    amount=limit.amount,
                    spent=float(spent),
                    ratio=float(ratio),
                    percentage=float(ratio * 100),
                    band=band,
                )
            )

        return UsageReport(
            period_start=period.start,
            period_end=period.end - timedelta(microseconds=1),
            forecast=forecast(month_spend, period.elapsed_days, period.total_days),
            limits=usages,
            refresh_interval_sec=self._refresh_interval,
        )
