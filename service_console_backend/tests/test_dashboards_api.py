from __future__ import annotations

import httpx
import pytest


def _widget(widget_id: str, **overrides):
    widget = {
        "id": widget_id,
        "name": f"Widget {widget_id}",
        "type": "chart",
        "config": {"service_id": "db-1", "metric_type": "cpu_usage", "function": "AVG"},
        "position": {"x": 0, "y": 0, "w": 4, "h": 3},
    }
    widget.update(overrides)
    return widget


@pytest.mark.anyio
async def test_dashboard_crud(async_client: httpx.AsyncClient):
    res = await async_client.post(
        "/api/dashboards",
        json={"name": "Ops", "description": "Ops overview", "widgets": [_widget("w1"), _widget("w2")]},
    )
    assert res.status_code == 201, res.text
    dash = res.json()
    dash_id = dash["id"]
    assert [w["id"] for w in dash["widgets"]] == ["w1", "w2"]
    assert dash["widgets"][0]["config"]["metric_type"] == "cpu_usage"

    res = await async_client.get("/api/dashboards")
    assert res.json()["total"] == 1

    res = await async_client.put(f"/api/dashboards/{dash_id}", json={"name": "Ops v2", "widgets": [_widget("w3")]})
    assert res.status_code == 200
    assert res.json()["name"] == "Ops v2"
    assert [w["id"] for w in res.json()["widgets"]] == ["w3"]
    assert res.json()["created_at"] == dash["created_at"]

    res = await async_client.delete(f"/api/dashboards/{dash_id}")
    assert res.status_code == 204
    res = await async_client.get(f"/api/dashboards/{dash_id}")
    assert res.status_code == 404
    assert res.json()["code"] == "not_found"


@pytest.mark.anyio
async def test_duplicate_widget_ids_conflict(async_client: httpx.AsyncClient):
    res = await async_client.post("/api/dashboards", json={"name": "Dup", "widgets": [_widget("w1"), _widget("w1")]})
    assert res.status_code == 409
    assert res.json()["code"] == "conflict"

    res = await async_client.post("/api/dashboards", json={"id": "main", "name": "Main", "widgets": [_widget("w1")]})
    assert res.status_code == 201

    res = await async_client.post("/api/dashboards/main/widgets", json=_widget("w1"))
    assert res.status_code == 409

    res = await async_client.post("/api/dashboards", json={"id": "main", "name": "Again"})
    assert res.status_code == 409


@pytest.mark.anyio
async def test_widget_add_update_remove(async_client: httpx.AsyncClient):
    await async_client.post("/api/dashboards", json={"id": "main", "name": "Main", "widgets": [_widget("w1")]})

    res = await async_client.post("/api/dashboards/main/widgets", json=_widget("w2", type="stat"))
    assert res.status_code == 201
    assert [w["id"] for w in res.json()["widgets"]] == ["w1", "w2"]

    res = await async_client.put(
        "/api/dashboards/main/widgets/w1",
        json=_widget("w1", name="CPU", position={"x": 4, "y": 0, "w": 4, "h": 3}),
    )
    assert res.status_code == 200
    assert res.json()["widgets"][0]["name"] == "CPU"
    assert res.json()["widgets"][0]["position"]["x"] == 4

    # Renaming onto a sibling's id is a conflict.
    res = await async_client.put("/api/dashboards/main/widgets/w1", json=_widget("w2"))
    assert res.status_code == 409

    res = await async_client.delete("/api/dashboards/main/widgets/w2")
    assert res.status_code == 200
    assert [w["id"] for w in res.json()["widgets"]] == ["w1"]

    res = await async_client.delete("/api/dashboards/main/widgets/w2")
    assert res.status_code == 404


@pytest.mark.anyio
async def test_non_numeric_position_rejected(async_client: httpx.AsyncClient):
    res = await async_client.post(
        "/api/dashboards",
        json={"name": "Bad", "widgets": [_widget("w1", position={"x": "left", "y": 0, "w": 1, "h": 1})]},
    )
    assert res.status_code == 422
