from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from conftest import FakeMetricsSource
from src.api.errors import ValidationError
from src.api.schemas.billing import UsageBand
from src.api.services.billing_service import billing_period, forecast, usage_band


def test_forecast_example():
    result = forecast(42.60, 10, 30)
    assert result.current_cost == 42.60
    assert result.daily_average == 4.26
    assert result.projected_cost == 127.80
    assert result.remaining_days == 20


def test_forecast_clamps_elapsed_and_remaining():
    early = forecast(5, 0, 30)
    assert early.daily_average == 5
    assert early.projected_cost == 150
    assert early.remaining_days == 29

    late = forecast(31, 31, 30)
    assert late.remaining_days == 0


@pytest.mark.parametrize(
    "cost, band",
    [
        (85, UsageBand.red),
        (65, UsageBand.yellow),
        (40, UsageBand.green),
        (80, UsageBand.yellow),
        (60, UsageBand.green),
        (80.01, UsageBand.red),
    ],
)
def test_usage_bands_are_strict(cost, band):
    ratio, got = usage_band(cost, 100)
    assert got == band
    assert float(ratio) == pytest.approx(cost / 100)


def test_usage_band_rejects_non_positive_limit():
    with pytest.raises(ValidationError):
        usage_band(10, 0)


def test_forecast_rejects_non_finite_inputs():
    with pytest.raises(ValidationError):
        forecast(10, float("nan"), 30)
    with pytest.raises(ValidationError):
        forecast(float("inf"), 10, 30)
    with pytest.raises(ValidationError):
        usage_band(10, float("nan"))


@pytest.mark.anyio
async def test_non_finite_json_numbers_are_rejected(async_client: httpx.AsyncClient):
    headers = {"Content-Type": "application/json"}
    res = await async_client.post(
        "/api/billing/forecast",
        content=b'{"current_cost": 10, "elapsed_days": NaN, "total_days": 30}',
        headers=headers,
    )
    assert res.status_code == 422

    res = await async_client.put("/api/billing/limits/monthly", content=b'{"amount": Infinity}', headers=headers)
    assert res.status_code == 422


def test_billing_period_is_calendar_month():
    period = billing_period(datetime(2026, 2, 10, 6, 0, tzinfo=timezone.utc))
    assert period.start == datetime(2026, 2, 1, tzinfo=timezone.utc)
    assert period.end == datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert period.total_days == 28
    assert period.elapsed_days == 10  # 9.25 days rounded up

    first_second = billing_period(datetime(2026, 12, 1, 0, 0, 1, tzinfo=timezone.utc))
    assert first_second.elapsed_days == 1
    assert first_second.end == datetime(2027, 1, 1, tzinfo=timezone.utc)


@pytest.mark.anyio
async def test_forecast_endpoint(async_client: httpx.AsyncClient):
    res = await async_client.post("/api/billing/forecast", json={"current_cost": 42.60, "elapsed_days": 10, "total_days": 30})
    assert res.status_code == 200, res.text
    assert res.json() == {"current_cost": 42.6, "projected_cost": 127.8, "daily_average": 4.26, "remaining_days": 20.0}


@pytest.mark.anyio
async def test_limits_crud(async_client: httpx.AsyncClient):
    res = await async_client.put("/api/billing/limits/monthly", json={"amount": 50, "name": "Monthly Budget"})
    assert res.status_code == 200, res.text
    assert res.json()["period"] == "monthly"

    res = await async_client.put("/api/billing/limits/monthly", json={"amount": 0})
    assert res.status_code == 422

    res = await async_client.put("/api/billing/limits/daily", json={"amount": 5})
    res = await async_client.get("/api/billing/limits")
    assert [item["period"] for item in res.json()["items"]] == ["daily", "monthly"]

    res = await async_client.delete("/api/billing/limits/daily")
    assert res.status_code == 204
    res = await async_client.get("/api/billing/limits/daily")
    assert res.status_code == 404

    res = await async_client.get("/api/billing/limits/weekly")
    assert res.status_code == 422


@pytest.mark.anyio
async def test_usage_report(async_client: httpx.AsyncClient, fake_metrics: FakeMetricsSource):
    as_of = datetime(2026, 10, 11, 0, 0, tzinfo=timezone.utc)  # 10 elapsed days of 31
    fake_metrics.add("db-1", "cost", as_of - timedelta(days=5), 20.0)
    fake_metrics.add("db-1", "cost", as_of - timedelta(hours=2), 2.60)
    fake_metrics.add("q-1", "cost", as_of - timedelta(days=3), 20.0)
    fake_metrics.add("q-1", "cost", as_of - timedelta(days=40), 999.0)  # previous month

    await async_client.put("/api/billing/limits/monthly", json={"amount": 50})
    await async_client.put("/api/billing/limits/daily", json={"amount": 10})

    res = await async_client.post(
        "/api/billing/usage",
        json={"service_ids": ["db-1", "q-1"], "as_of": as_of.isoformat()},
    )
    assert res.status_code == 200, res.text
    report = res.json()

    assert report["forecast"]["current_cost"] == 42.6
    assert report["forecast"]["daily_average"] == 4.26
    assert report["forecast"]["remaining_days"] == 21
    assert report["refresh_interval_sec"] == 60

    by_period = {lim["period"]: lim for lim in report["limits"]}
    assert by_period["monthly"]["band"] == "red"  # 42.6 / 50 = 0.852
    assert by_period["monthly"]["percentage"] == pytest.approx(85.2)
    # The daily window starts at 00:00 UTC of as_of, so no sample falls inside it.
    assert by_period["daily"]["spent"] == 0.0
    assert by_period["daily"]["band"] == "green"
