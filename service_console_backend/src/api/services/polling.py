from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

from src.api.errors import ConsoleError, NotFoundError, ValidationError
from src.api.schemas.common import utc_now
from src.api.schemas.instances import ServiceInstance, ServiceKind
from src.api.services.health import HealthStateMachine
from src.api.services.registry import ServiceRegistry

logger = logging.getLogger(__name__)


@dataclass
class PollingLease:
    """A holder's interest in periodic health polling of some kinds."""

    id: str
    kinds: FrozenSet[ServiceKind]
    holder: Optional[str]
    expires_at: datetime


class HealthPoller:
    """
    Lease-driven health polling.

    Each tick refreshes every leased kind once, then probes the live instances of those kinds concurrently.
    With no live leases a tick does nothing.
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        machine: HealthStateMachine,
        *,
        interval_sec: int = 30,
        default_ttl_sec: int = 120,
    ):
        self._registry = registry
        self._interval = max(1, int(interval_sec))
        self._default_ttl = max(1, int(default_ttl_sec))
        self._leases: Dict[str, PollingLease] = {}
        self._probes: Dict[str, asyncio.Task] = {}
        machine.add_removal_listener(self._on_removed)

    @property
    def interval_sec(self) -> int:
        return self._interval

    def _ttl(self, ttl_sec: Optional[int]) -> timedelta:
        ttl = self._default_ttl if ttl_sec is None else int(ttl_sec)
        if ttl <= 0:
            raise ValidationError("ttl_sec must be positive")
        return timedelta(seconds=ttl)

    # PUBLIC_INTERFACE
    def acquire(
        self,
        kinds: Iterable[ServiceKind],
        *,
        holder: Optional[str] = None,
        ttl_sec: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> PollingLease:
        """Register interest in polling `kinds` until the lease is released or expires."""
        kind_set = frozenset(kinds)
        if not kind_set:
            raise ValidationError("a polling lease needs at least one kind")
        now = now or utc_now()
        lease = PollingLease(id=str(uuid.uuid4()), kinds=kind_set, holder=holder, expires_at=now + self._ttl(ttl_sec))
        self._leases[lease.id] = lease
        logger.info(
            "Polling lease %s acquired by %s for %s",
            lease.id,
            holder or "anonymous",
            sorted(k.value for k in kind_set),
        )
        return lease

    # PUBLIC_INTERFACE
    def renew(self, lease_id: str, *, ttl_sec: Optional[int] = None, now: Optional[datetime] = None) -> PollingLease:
        """Push a live lease's expiry out by a fresh TTL."""
        now = now or utc_now()
        self._expire(now)
        lease = self._leases.get(lease_id)
        if lease is None:
            raise NotFoundError(f"polling lease {lease_id} not found")
        lease.expires_at = now + self._ttl(ttl_sec)
        return lease

    # PUBLIC_INTERFACE
    def release(self, lease_id: str) -> None:
        """Drop a lease; polling for its kinds stops unless another lease still covers them."""
        if self._leases.pop(lease_id, None) is None:
            raise NotFoundError(f"polling lease {lease_id} not found")
        logger.info("Polling lease %s released", lease_id)

    def _expire(self, now: datetime) -> None:
        for lease_id in [lid for lid, lease in self._leases.items() if lease.expires_at <= now]:
            self._leases.pop(lease_id, None)
            logger.info("Polling lease %s expired", lease_id)

    def leases(self, now: Optional[datetime] = None) -> List[PollingLease]:
        self._expire(now or utc_now())
        return list(self._leases.values())

    # PUBLIC_INTERFACE
    def leased_kinds(self, now: Optional[datetime] = None) -> Set[ServiceKind]:
        """Union of kinds over live leases (expired leases are dropped first)."""
        kinds: Set[ServiceKind] = set()
        for lease in self.leases(now):
            kinds.update(lease.kinds)
        return kinds

    def _on_removed(self, inst: ServiceInstance) -> None:
        task = self._probes.pop(inst.service_id, None)
        if task is not None and not task.done():
            task.cancel()
            logger.info("Cancelled in-flight probe for removed service_id=%s", inst.service_id)

    async def _probe(self, service_id: str) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._probes[service_id] = task
        try:
            await self._registry.check_health(service_id)
        finally:
            if self._probes.get(service_id) is task:
                self._probes.pop(service_id, None)

    # PUBLIC_INTERFACE
    async def poll_once(self, now: Optional[datetime] = None) -> Dict[ServiceKind, int]:
        """Run one polling tick. Returns the number of instances probed per kind."""
        kinds = sorted(self.leased_kinds(now), key=lambda k: k.value)
        if not kinds:
            return {}

        refreshed = await asyncio.gather(*(self._registry.refresh(k) for k in kinds), return_exceptions=True)
        for kind, outcome in zip(kinds, refreshed):
            if isinstance(outcome, ConsoleError):
                logger.warning("Refresh of %s failed during poll: %s", kind.value, outcome.detail)
            elif isinstance(outcome, BaseException):
                logger.error("Refresh of %s failed during poll", kind.value, exc_info=outcome)

        probed: Dict[ServiceKind, int] = {}
        ids: List[str] = []
        for kind in kinds:
            live = self._registry.list(kind)
            probed[kind] = len(live)
            ids.extend(inst.service_id for inst in live)

        results = await asyncio.gather(
            *(asyncio.ensure_future(self._probe(sid)) for sid in ids),
            return_exceptions=True,
        )
        for sid, res in zip(ids, results):
            if isinstance(res, asyncio.CancelledError):
                continue
            if isinstance(res, NotFoundError):
                # Removed while the probe was in flight.
                logger.info("Probe result for service_id=%s discarded: %s", sid, res.detail)
            elif isinstance(res, BaseException):
                logger.error("Probe failed for service_id=%s", sid, exc_info=res)
        return probed


# PUBLIC_INTERFACE
async def health_poller_loop(poller: HealthPoller, shutdown_event: asyncio.Event) -> None:
    """Background loop that runs one polling tick per interval until shutdown."""
    interval = poller.interval_sec
    logger.info("Health poller started (interval=%ss)", interval)

    while not shutdown_event.is_set():
        tick_started = datetime.now(timezone.utc)
        try:
            await poller.poll_once()
        except Exception:
            logger.exception("Health poller tick failed")

        elapsed = (datetime.now(timezone.utc) - tick_started).total_seconds()
        sleep_for = max(0.1, interval - elapsed)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=sleep_for)
        except asyncio.TimeoutError:
            pass

    logger.info("Health poller stopped")
