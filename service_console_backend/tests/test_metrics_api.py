from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from conftest import FakeMetricsSource


def _now() -> datetime:
    return datetime.now(timezone.utc)


@pytest.mark.anyio
async def test_aggregate_endpoint(async_client: httpx.AsyncClient, fake_metrics: FakeMetricsSource):
    end = _now()
    fake_metrics.add_series("svc-1", "cpu_usage", [70.0, 80.0, 90.0], end=end)

    res = await async_client.post(
        "/api/metrics/svc-1/aggregate",
        json={
            "metric_type": "cpu_usage",
            "function": "avg",
            "start": (end - timedelta(minutes=5)).isoformat(),
            "end": end.isoformat(),
        },
    )
    assert res.status_code == 200, res.text
    data = res.json()
    assert data["function"] == "AVG"
    assert data["value"] == 80.0
    assert data["sample_count"] == 3


@pytest.mark.anyio
async def test_aggregate_empty_window_and_unknown_function(async_client: httpx.AsyncClient):
    end = _now()
    window = {"start": (end - timedelta(minutes=5)).isoformat(), "end": end.isoformat()}

    res = await async_client.post("/api/metrics/svc-1/aggregate", json={"metric_type": "cpu_usage", "function": "COUNT", **window})
    assert res.status_code == 200
    assert res.json()["value"] == 0

    res = await async_client.post("/api/metrics/svc-1/aggregate", json={"metric_type": "cpu_usage", "function": "median", **window})
    assert res.status_code == 400
    body = res.json()
    assert body["code"] == "validation_error"
    assert "median" in body["detail"]


@pytest.mark.anyio
async def test_timeseries_endpoint(async_client: httpx.AsyncClient, fake_metrics: FakeMetricsSource):
    end = _now()
    fake_metrics.add_series("svc-1", "error_rate", [1.0, 2.0, 3.0], end=end, step=timedelta(minutes=1))

    res = await async_client.post(
        "/api/metrics/svc-1/timeseries",
        json={"metric_type": "error_rate", "step_seconds": 60, "function": "max"},
    )
    assert res.status_code == 200, res.text
    data = res.json()
    assert data["unit"] == "%"
    assert data["function"] == "MAX"
    assert sorted(p["value"] for p in data["points"]) == [1.0, 2.0, 3.0]


@pytest.mark.anyio
async def test_query_view_flow(async_client: httpx.AsyncClient, fake_metrics: FakeMetricsSource):
    end = _now()
    fake_metrics.add_series("svc-1", "cpu_usage", [10.0, 30.0], end=end)
    start = (end - timedelta(minutes=10)).isoformat()

    res = await async_client.post(
        "/api/metrics/queries",
        json={"service_id": "svc-1", "metric_type": "cpu_usage", "function": "AVG", "start": start, "end": end.isoformat()},
    )
    assert res.status_code == 201, res.text
    view = res.json()
    assert view["state"] == "fresh"
    assert view["value"] == 20.0

    res = await async_client.patch(f"/api/metrics/queries/{view['id']}", json={"function": "MIN"})
    assert res.status_code == 200
    assert res.json()["state"] == "stale"
    assert res.json()["value"] == 20.0

    res = await async_client.post(f"/api/metrics/queries/{view['id']}/recompute")
    assert res.status_code == 200
    assert res.json()["state"] == "fresh"
    assert res.json()["value"] == 10.0

    res = await async_client.delete(f"/api/metrics/queries/{view['id']}")
    assert res.status_code == 204
    res = await async_client.get(f"/api/metrics/queries/{view['id']}")
    assert res.status_code == 404
    assert res.json()["code"] == "not_found"
