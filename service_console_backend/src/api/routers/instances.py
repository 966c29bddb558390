from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Path, Query, Request, status

from src.api.errors import ValidationError
from src.api.schemas.common import ErrorResponse
from src.api.schemas.instances import (
    ActiveInstanceResponse,
    HealthCheckResult,
    InstanceListResponse,
    LaunchRequest,
    RefreshResponse,
    ServiceInstance,
    ServiceKind,
)
from src.api.state import get_state

router = APIRouter(prefix="/api/instances", tags=["Instances"])


def parse_kind(raw: str) -> ServiceKind:
    """Accept the kind value ('SqlDatabase') or member name ('sql_database'), case-insensitively."""
    token = (raw or "").strip().lower().replace("-", "_")
    for kind in ServiceKind:
        if token in (kind.value.lower(), kind.name):
            return kind
    allowed = ", ".join(k.value for k in ServiceKind)
    raise ValidationError(f"unknown service kind {raw!r} (expected one of {allowed})")


@router.get(
    "",
    response_model=InstanceListResponse,
    responses={400: {"model": ErrorResponse}},
    summary="List instances",
    description="Return live registry instances, optionally for one kind. Does not call the provisioning API.",
    operation_id="list_instances",
)
def list_instances(
    request: Request,
    kind: Optional[str] = Query(default=None, description="Optional kind filter (e.g. SqlDatabase)."),
) -> InstanceListResponse:
    """List registry instances."""
    items = get_state(request.app).registry.list(parse_kind(kind) if kind else None)
    return InstanceListResponse(items=items, total=len(items))


@router.post(
    "/{kind}/refresh",
    response_model=RefreshResponse,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Refresh kind",
    description=(
        "List the kind from the provisioning API and replace its registry records with the response. "
        "Malformed entries are excluded and reported in `rejected`."
    ),
    operation_id="refresh_instances",
)
async def refresh_instances(request: Request, kind: str = Path(..., description="Service kind")) -> RefreshResponse:
    """Refresh one kind from the provisioning API."""
    outcome = await get_state(request.app).registry.refresh(parse_kind(kind))
    return RefreshResponse(
        kind=outcome.kind,
        items=outcome.instances,
        total=len(outcome.instances),
        rejected=outcome.errors,
    )


@router.post(
    "/{kind}/launch",
    response_model=ServiceInstance,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Launch instance",
    description="Launch a new instance of the kind and register it (Provisioning until its first probe).",
    operation_id="launch_instance",
)
async def launch_instance(
    request: Request,
    payload: Optional[LaunchRequest] = None,
    kind: str = Path(..., description="Service kind"),
) -> ServiceInstance:
    """Launch a new instance."""
    return await get_state(request.app).registry.launch(parse_kind(kind), payload)


@router.get(
    "/{kind}/active",
    response_model=ActiveInstanceResponse,
    responses={400: {"model": ErrorResponse}},
    summary="Get active instance",
    description="Return the pinned instance of the kind, else the first healthy one (null when none).",
    operation_id="get_active_instance",
)
def get_active_instance(request: Request, kind: str = Path(..., description="Service kind")) -> ActiveInstanceResponse:
    """Return the selected instance for a kind."""
    resolved = parse_kind(kind)
    return ActiveInstanceResponse(kind=resolved, instance=get_state(request.app).registry.select(resolved))


@router.put(
    "/{kind}/active/{service_id}",
    response_model=ActiveInstanceResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Select instance",
    description="Pin an instance as the active one for its kind.",
    operation_id="set_active_instance",
)
def set_active_instance(
    request: Request,
    kind: str = Path(..., description="Service kind"),
    service_id: str = Path(..., description="Service identifier"),
) -> ActiveInstanceResponse:
    """Pin the active instance of a kind."""
    resolved = parse_kind(kind)
    inst = get_state(request.app).registry.set_selected(resolved, service_id)
    return ActiveInstanceResponse(kind=resolved, instance=inst)


@router.get(
    "/{service_id}",
    response_model=ServiceInstance,
    responses={404: {"model": ErrorResponse}},
    summary="Get instance",
    description="Fetch a single live instance by service id.",
    operation_id="get_instance",
)
def get_instance(request: Request, service_id: str = Path(..., description="Service identifier")) -> ServiceInstance:
    """Fetch a single instance by ID."""
    return get_state(request.app).registry.get(service_id)


@router.post(
    "/{service_id}/health",
    response_model=HealthCheckResult,
    responses={404: {"model": ErrorResponse}},
    summary="Check instance health",
    description=(
        "Probe the instance and apply the result. Collaborator failures come back as an unhealthy result "
        "with `error` set; removed or unknown ids return 404."
    ),
    operation_id="check_instance_health",
)
async def check_instance_health(
    request: Request,
    service_id: str = Path(..., description="Service identifier"),
) -> HealthCheckResult:
    """Probe one instance."""
    return await get_state(request.app).registry.check_health(service_id)


@router.delete(
    "/{service_id}",
    response_model=ServiceInstance,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Delete instance",
    description="Remove the instance upstream and mark it Removed; in-flight probes are cancelled.",
    operation_id="delete_instance",
)
async def delete_instance(
    request: Request,
    service_id: str = Path(..., description="Service identifier"),
) -> ServiceInstance:
    """Remove an instance."""
    return await get_state(request.app).registry.remove(service_id)
