from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Path, Query, Request, status

from src.api.schemas.alerts import (
    AlertListResponse,
    AlertRuleCreate,
    AlertRuleListResponse,
    AlertRuleOut,
    AlertRuleUpdate,
    AlertStatus,
    EvaluationResult,
)
from src.api.schemas.common import ErrorResponse
from src.api.state import get_state

router = APIRouter(prefix="/api/alerts", tags=["Alerts"])


@router.get(
    "/rules",
    response_model=AlertRuleListResponse,
    summary="List alert rules",
    description="List alert rules, newest first. Optionally filter to rules watching one service.",
    operation_id="list_alert_rules",
)
def list_rules(
    request: Request,
    service_id: Optional[str] = Query(default=None, description="Optional service filter."),
) -> AlertRuleListResponse:
    """List alert rules."""
    items = get_state(request.app).alerts.list_rules(service_id=service_id)
    return AlertRuleListResponse(items=items, total=len(items))


@router.post(
    "/rules",
    response_model=AlertRuleOut,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
    summary="Create alert rule",
    description="Create a new threshold rule: `aggregate(metric over window_sec) <operator> threshold`.",
    operation_id="create_alert_rule",
)
async def create_rule(request: Request, payload: AlertRuleCreate) -> AlertRuleOut:
    """Create an alert rule."""
    if not payload.name.strip():
        raise HTTPException(status_code=400, detail="name must not be empty")
    return await get_state(request.app).alerts.create_rule(payload)


@router.get(
    "/rules/{rule_id}",
    response_model=AlertRuleOut,
    responses={404: {"model": ErrorResponse}},
    summary="Get alert rule",
    description="Fetch a single alert rule by id.",
    operation_id="get_alert_rule",
)
def get_rule(request: Request, rule_id: str = Path(..., description="Rule id.")) -> AlertRuleOut:
    """Get a rule by id."""
    return get_state(request.app).alerts.get_rule(rule_id)


@router.put(
    "/rules/{rule_id}",
    response_model=AlertRuleOut,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Replace alert rule",
    description="Replace an existing alert rule (full update).",
    operation_id="put_alert_rule",
)
async def put_rule(
    request: Request,
    payload: AlertRuleCreate,
    rule_id: str = Path(..., description="Rule id."),
) -> AlertRuleOut:
    """Replace an alert rule."""
    if not payload.name.strip():
        raise HTTPException(status_code=400, detail="name must not be empty")
    return await get_state(request.app).alerts.put_rule(rule_id, payload)


@router.patch(
    "/rules/{rule_id}",
    response_model=AlertRuleOut,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Update alert rule",
    description="Patch an existing alert rule (partial update).",
    operation_id="patch_alert_rule",
)
async def patch_rule(
    request: Request,
    payload: AlertRuleUpdate,
    rule_id: str = Path(..., description="Rule id."),
) -> AlertRuleOut:
    """Patch an alert rule."""
    if payload.name is not None and not payload.name.strip():
        raise HTTPException(status_code=400, detail="name must not be empty")
    return await get_state(request.app).alerts.patch_rule(rule_id, payload)


@router.delete(
    "/rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    summary="Delete alert rule",
    description="Delete an alert rule; its active alert, if any, is resolved.",
    operation_id="delete_alert_rule",
)
async def delete_rule(request: Request, rule_id: str = Path(..., description="Rule id.")) -> None:
    """Delete an alert rule."""
    await get_state(request.app).alerts.delete_rule(rule_id)
    return None


@router.post(
    "/rules/{rule_id}/evaluate",
    response_model=EvaluationResult,
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Evaluate alert rule",
    description="Evaluate one rule now and create, refresh or resolve its alert.",
    operation_id="evaluate_alert_rule",
)
async def evaluate_rule(request: Request, rule_id: str = Path(..., description="Rule id.")) -> EvaluationResult:
    """Evaluate a rule on demand."""
    return await get_state(request.app).evaluator.evaluate(rule_id)


@router.get(
    "",
    response_model=AlertListResponse,
    summary="List alerts",
    description="List alerts ordered critical > warning > info, then newest first.",
    operation_id="list_alerts",
)
def list_alerts(
    request: Request,
    status_filter: Optional[AlertStatus] = Query(default=None, alias="status", description="active|resolved"),
    rule_id: Optional[str] = Query(default=None, description="Optional rule filter."),
    service_id: Optional[str] = Query(default=None, description="Optional service filter."),
) -> AlertListResponse:
    """List alerts."""
    items = get_state(request.app).alerts.list_alerts(status=status_filter, rule_id=rule_id, service_id=service_id)
    return AlertListResponse(items=items, total=len(items))
