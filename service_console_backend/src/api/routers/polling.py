from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Path, Request, status

from src.api.schemas.common import ErrorResponse
from src.api.schemas.polling import LeaseCreate, LeaseOut
from src.api.services.polling import HealthPoller, PollingLease
from src.api.state import get_state

router = APIRouter(prefix="/api/polling", tags=["Polling"])


def _lease_out(lease: PollingLease, poller: HealthPoller) -> LeaseOut:
    return LeaseOut(
        id=lease.id,
        kinds=sorted(lease.kinds, key=lambda k: k.value),
        holder=lease.holder,
        expires_at=lease.expires_at,
        interval_sec=poller.interval_sec,
    )


@router.post(
    "/leases",
    response_model=LeaseOut,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
    summary="Acquire polling lease",
    description="Keep health of the given kinds current until the lease is released or its TTL runs out.",
    operation_id="acquire_polling_lease",
)
def acquire_lease(request: Request, payload: LeaseCreate) -> LeaseOut:
    """Acquire a polling lease."""
    poller = get_state(request.app).poller
    lease = poller.acquire(payload.kinds, holder=payload.holder, ttl_sec=payload.ttl_sec)
    return _lease_out(lease, poller)


@router.post(
    "/leases/{lease_id}/renew",
    response_model=LeaseOut,
    responses={404: {"model": ErrorResponse}},
    summary="Renew polling lease",
    description="Extend a live lease by a fresh TTL. Expired leases are gone and return 404.",
    operation_id="renew_polling_lease",
)
def renew_lease(
    request: Request,
    lease_id: str = Path(..., description="Lease id"),
    ttl_sec: Optional[int] = Body(default=None, embed=True, ge=1, le=24 * 3600),
) -> LeaseOut:
    """Renew a polling lease."""
    poller = get_state(request.app).poller
    return _lease_out(poller.renew(lease_id, ttl_sec=ttl_sec), poller)


@router.delete(
    "/leases/{lease_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    summary="Release polling lease",
    description="Release a lease; polling stops for kinds no other lease covers.",
    operation_id="release_polling_lease",
)
def release_lease(request: Request, lease_id: str = Path(..., description="Lease id")) -> None:
    """Release a polling lease."""
    get_state(request.app).poller.release(lease_id)
    return None
