from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from conftest import FakeMetricsSource, FakeProvisioning, db_entry
from src.api.errors import NotFoundError
from src.api.schemas.alerts import AlertRuleCreate
from src.api.schemas.instances import ServiceKind


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _rule_payload(**overrides):
    payload = {
        "name": "High CPU",
        "service_id": "db-1",
        "metric_type": "cpu_usage",
        "aggregation_function": "AVG",
        "operator": ">",
        "threshold": 80,
        "severity": "critical",
        "is_active": True,
        "window_sec": 300,
    }
    payload.update(overrides)
    return payload


@pytest.mark.anyio
async def test_rule_crud(async_client: httpx.AsyncClient):
    res = await async_client.post("/api/alerts/rules", json=_rule_payload())
    assert res.status_code == 201, res.text
    rule = res.json()
    rule_id = rule["id"]
    assert rule["window_sec"] == 300

    res = await async_client.get(f"/api/alerts/rules/{rule_id}")
    assert res.status_code == 200
    assert res.json()["name"] == "High CPU"

    res = await async_client.patch(f"/api/alerts/rules/{rule_id}", json={"threshold": 95, "severity": "warning"})
    assert res.status_code == 200
    assert res.json()["threshold"] == 95
    assert res.json()["severity"] == "warning"
    assert res.json()["operator"] == ">"

    res = await async_client.put(f"/api/alerts/rules/{rule_id}", json=_rule_payload(name="Renamed", operator=">="))
    assert res.status_code == 200
    assert res.json()["name"] == "Renamed"
    assert res.json()["created_at"] == rule["created_at"]

    res = await async_client.get("/api/alerts/rules", params={"service_id": "db-1"})
    assert res.json()["total"] == 1
    res = await async_client.get("/api/alerts/rules", params={"service_id": "other"})
    assert res.json()["total"] == 0

    res = await async_client.delete(f"/api/alerts/rules/{rule_id}")
    assert res.status_code == 204
    res = await async_client.get(f"/api/alerts/rules/{rule_id}")
    assert res.status_code == 404


@pytest.mark.anyio
async def test_rule_validation(async_client: httpx.AsyncClient):
    res = await async_client.post("/api/alerts/rules", json=_rule_payload(name="   "))
    assert res.status_code == 400

    no_window = _rule_payload()
    no_window.pop("window_sec")
    res = await async_client.post("/api/alerts/rules", json=no_window)
    assert res.status_code == 422

    res = await async_client.post("/api/alerts/rules", json=_rule_payload(aggregation_function="MEDIAN"))
    assert res.status_code == 422


@pytest.mark.anyio
async def test_alert_created_once_refreshed_then_resolved(
    async_client: httpx.AsyncClient,
    fake_metrics: FakeMetricsSource,
):
    res = await async_client.post("/api/alerts/rules", json=_rule_payload())
    rule_id = res.json()["id"]

    fake_metrics.add_series("db-1", "cpu_usage", [80.0, 90.0], end=_now())
    res = await async_client.post(f"/api/alerts/rules/{rule_id}/evaluate")
    assert res.status_code == 200, res.text
    first = res.json()
    assert first["outcome"] == "created"
    assert first["value"] == 85.0
    assert first["alert"]["status"] == "active"
    alert_id = first["alert"]["id"]

    fake_metrics.clear()
    fake_metrics.add_series("db-1", "cpu_usage", [88.0, 92.0], end=_now())
    res = await async_client.post(f"/api/alerts/rules/{rule_id}/evaluate")
    second = res.json()
    assert second["outcome"] == "updated"
    assert second["alert"]["id"] == alert_id
    assert second["alert"]["current_value"] == 90.0
    assert second["alert"]["triggered_at"] == first["alert"]["triggered_at"]

    res = await async_client.get("/api/alerts", params={"status": "active"})
    assert res.json()["total"] == 1

    fake_metrics.clear()
    fake_metrics.add_series("db-1", "cpu_usage", [60.0, 80.0], end=_now())
    res = await async_client.post(f"/api/alerts/rules/{rule_id}/evaluate")
    third = res.json()
    assert third["outcome"] == "resolved"
    assert third["alert"]["status"] == "resolved"
    assert third["alert"]["resolved_at"] is not None

    res = await async_client.get("/api/alerts", params={"status": "active"})
    assert res.json()["total"] == 0

    res = await async_client.post(f"/api/alerts/rules/{rule_id}/evaluate")
    assert res.json()["outcome"] == "unchanged"
    assert res.json()["alert"] is None


@pytest.mark.anyio
async def test_window_excludes_old_samples(async_client: httpx.AsyncClient, fake_metrics: FakeMetricsSource):
    res = await async_client.post("/api/alerts/rules", json=_rule_payload(window_sec=60))
    rule_id = res.json()["id"]
    fake_metrics.add_series("db-1", "cpu_usage", [99.0], end=_now() - timedelta(minutes=10))

    res = await async_client.post(f"/api/alerts/rules/{rule_id}/evaluate")
    data = res.json()
    assert data["sample_count"] == 0
    assert data["value"] == 0
    assert data["outcome"] == "unchanged"


@pytest.mark.anyio
async def test_inactive_rule_is_skipped(async_client: httpx.AsyncClient, fake_metrics: FakeMetricsSource):
    res = await async_client.post("/api/alerts/rules", json=_rule_payload(is_active=False))
    fake_metrics.add_series("db-1", "cpu_usage", [99.0], end=_now())

    res = await async_client.post(f"/api/alerts/rules/{res.json()['id']}/evaluate")
    assert res.json()["outcome"] == "skipped"
    assert fake_metrics.calls == 0


@pytest.mark.anyio
async def test_rule_for_removed_service_reports_not_found(
    async_client: httpx.AsyncClient,
    fake_provisioning: FakeProvisioning,
):
    fake_provisioning.services[ServiceKind.sql_database] = [db_entry("db-1")]
    await async_client.post("/api/instances/SqlDatabase/refresh")
    await async_client.delete("/api/instances/db-1")

    res = await async_client.post("/api/alerts/rules", json=_rule_payload())
    res = await async_client.post(f"/api/alerts/rules/{res.json()['id']}/evaluate")
    assert res.status_code == 404
    assert res.json()["code"] == "not_found"


@pytest.mark.anyio
async def test_deleting_rule_resolves_its_active_alert(async_client: httpx.AsyncClient, fake_metrics: FakeMetricsSource):
    res = await async_client.post("/api/alerts/rules", json=_rule_payload())
    rule_id = res.json()["id"]
    fake_metrics.add_series("db-1", "cpu_usage", [95.0], end=_now())
    await async_client.post(f"/api/alerts/rules/{rule_id}/evaluate")

    await async_client.delete(f"/api/alerts/rules/{rule_id}")

    res = await async_client.get("/api/alerts", params={"rule_id": rule_id})
    items = res.json()["items"]
    assert len(items) == 1
    assert items[0]["status"] == "resolved"


@pytest.mark.anyio
async def test_alerts_ordered_by_severity_then_newest(async_client: httpx.AsyncClient, fake_metrics: FakeMetricsSource):
    fake_metrics.add_series("db-1", "cpu_usage", [95.0], end=_now())
    ids = {}
    for severity in ("info", "critical", "warning"):
        res = await async_client.post("/api/alerts/rules", json=_rule_payload(name=f"{severity} rule", severity=severity))
        ids[severity] = res.json()["id"]
        await async_client.post(f"/api/alerts/rules/{ids[severity]}/evaluate")

    res = await async_client.get("/api/alerts")
    assert [a["severity"] for a in res.json()["items"]] == ["critical", "warning", "info"]


@pytest.mark.anyio
async def test_evaluate_all_covers_active_rules_only(state, fake_metrics: FakeMetricsSource):
    fake_metrics.add_series("db-1", "cpu_usage", [95.0], end=_now())
    on = await state.alerts.create_rule(AlertRuleCreate(**_rule_payload()))
    await state.alerts.create_rule(AlertRuleCreate(**_rule_payload(is_active=False)))

    results = await state.evaluator.evaluate_all()

    assert [r.rule_id for r in results] == [on.id]
    assert results[0].outcome == "created"


@pytest.mark.anyio
async def test_rule_deleted_mid_evaluation_leaves_no_active_alert(state, fake_metrics: FakeMetricsSource):
    fake_metrics.add_series("db-1", "cpu_usage", [85.0], end=_now())
    rule = await state.alerts.create_rule(AlertRuleCreate(**_rule_payload()))

    fake_metrics.gate = asyncio.Event()
    fake_metrics.fetch_started = asyncio.Event()
    evaluation = asyncio.ensure_future(state.evaluator.evaluate(rule.id))
    await fake_metrics.fetch_started.wait()

    deletion = asyncio.ensure_future(state.alerts.delete_rule(rule.id))
    await asyncio.sleep(0)
    # Deletion waits for the in-flight evaluation of the same rule.
    assert not deletion.done()

    fake_metrics.gate.set()
    assert (await evaluation).outcome == "created"
    resolved = await deletion
    assert resolved is not None
    assert resolved.status == "resolved"

    assert state.alerts.list_alerts(status="active") == []
    assert rule.id not in state.alerts._locks
    with pytest.raises(NotFoundError):
        await state.evaluator.evaluate(rule.id)
    assert rule.id not in state.alerts._locks


@pytest.mark.anyio
async def test_deactivating_rule_resolves_its_active_alert(async_client: httpx.AsyncClient, fake_metrics: FakeMetricsSource):
    res = await async_client.post("/api/alerts/rules", json=_rule_payload())
    rule_id = res.json()["id"]
    fake_metrics.add_series("db-1", "cpu_usage", [95.0], end=_now())
    res = await async_client.post(f"/api/alerts/rules/{rule_id}/evaluate")
    assert res.json()["outcome"] == "created"

    res = await async_client.patch(f"/api/alerts/rules/{rule_id}", json={"is_active": False})
    assert res.status_code == 200
    assert res.json()["is_active"] is False

    res = await async_client.get("/api/alerts", params={"rule_id": rule_id})
    items = res.json()["items"]
    assert [a["status"] for a in items] == ["resolved"]

    res = await async_client.post(f"/api/alerts/rules/{rule_id}/evaluate")
    assert res.json()["outcome"] == "skipped"
