from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from src.api.clients.provisioning import ProvisioningClient
from src.api.errors import ConflictError, ConsoleError, NotFoundError, StateError, ValidationError
from src.api.schemas.common import utc_now
from src.api.schemas.instances import (
    HealthCheckResult,
    InstanceStatus,
    LaunchRequest,
    NormalizationIssue,
    ResourceLimits,
    ServiceInstance,
    ServiceKind,
)

logger = logging.getLogger(__name__)


_STATUS_TOKENS: Dict[str, InstanceStatus] = {
    "running": InstanceStatus.running,
    "active": InstanceStatus.running,
    "healthy": InstanceStatus.running,
    "stopped": InstanceStatus.stopped,
    "exited": InstanceStatus.stopped,
    "paused": InstanceStatus.stopped,
    "error": InstanceStatus.error,
    "failed": InstanceStatus.error,
    "dead": InstanceStatus.error,
    "unhealthy": InstanceStatus.error,
    "created": InstanceStatus.provisioning,
    "pending": InstanceStatus.provisioning,
    "starting": InstanceStatus.provisioning,
    "provisioning": InstanceStatus.provisioning,
    "restarting": InstanceStatus.provisioning,
    "removed": InstanceStatus.removed,
    "deleted": InstanceStatus.removed,
}

# Fields every kind shares; anything else non-empty lands in `details`.
_COMMON_FIELDS = {
    "service_id",
    "container_id",
    "node_id",
    "ip_address",
    "port",
    "ports",
    "status",
    "is_healthy",
    "created_at",
    "service_url",
    "instance_name",
    "name",
    "max_cpu_percent",
    "max_ram_mb",
    "max_disk_gb",
    "cpu",
    "memory",
    "last_check",
    "last_health_check",
}


def _parse_status(raw: Any) -> InstanceStatus:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return InstanceStatus.provisioning
    token = str(raw).strip().lower()
    status = _STATUS_TOKENS.get(token)
    if status is None:
        raise ValidationError(f"unrecognized status token {raw!r}")
    return status


def _parse_memory_mb(raw: Any) -> Optional[float]:
    """'512m' -> 512.0, '1g' -> 1024.0, plain numbers are MB."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, (int, float)):
        return float(raw)
    m = re.fullmatch(r"\s*(\d+(?:\.\d+)?)\s*([kmg]?)b?\s*", str(raw).lower())
    if not m:
        raise ValidationError(f"unrecognized memory limit {raw!r}")
    value = float(m.group(1))
    unit = m.group(2)
    if unit == "g":
        return value * 1024.0
    if unit == "k":
        return value / 1024.0
    return value


def _first_port(ports: Any) -> Optional[int]:
    if isinstance(ports, dict):
        for value in ports.values():
            if value is not None:
                return int(value)
    return None


def _resource_limits(kind: ServiceKind, entry: Dict[str, Any]) -> Optional[ResourceLimits]:
    if kind == ServiceKind.sql_database:
        cpu, ram, disk = entry.get("max_cpu_percent"), entry.get("max_ram_mb"), entry.get("max_disk_gb")
        if cpu is None and ram is None and disk is None:
            return None
        return ResourceLimits(cpu_percent=cpu, ram_mb=ram, disk_gb=disk)
    if kind == ServiceKind.compute:
        cores = entry.get("cpu")
        ram = _parse_memory_mb(entry.get("memory"))
        if cores is None and ram is None:
            return None
        return ResourceLimits(cpu_percent=float(cores) * 100.0 if cores is not None else None, ram_mb=ram)
    return None


def _normalize_entry(kind: ServiceKind, entry: Any, arrived_at: datetime) -> ServiceInstance:
    if not isinstance(entry, dict):
        raise ValidationError(f"entry is a {type(entry).__name__}, expected an object")

    id_field = "container_id" if kind == ServiceKind.compute else "service_id"
    service_id = str(entry.get(id_field) or entry.get("service_id") or "").strip()
    if not service_id:
        raise ValidationError(f"missing non-empty {id_field}")

    status = _parse_status(entry.get("status"))
    if kind == ServiceKind.compute:
        is_healthy = status == InstanceStatus.running
        port = _first_port(entry.get("ports"))
    else:
        is_healthy = bool(entry.get("is_healthy", False))
        port = entry.get("port")

    details = {k: v for k, v in entry.items() if k not in _COMMON_FIELDS and v is not None}

    try:
        return ServiceInstance(
            service_id=service_id,
            kind=kind,
            node_id=entry.get("node_id"),
            container_id=entry.get("container_id"),
            address=entry.get("ip_address"),
            port=port,
            url=entry.get("service_url"),
            status=status,
            is_healthy=is_healthy,
            created_at=entry.get("created_at") or arrived_at,
            last_checked_at=entry.get("last_check") or entry.get("last_health_check"),
            resource_limits=_resource_limits(kind, entry),
            instance_name=entry.get("instance_name") or entry.get("name"),
            details=details,
        )
    except PydanticValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()))
        raise ValidationError(f"invalid field {loc or '?'}: {first.get('msg', 'invalid value')}") from exc


@dataclass
class NormalizeResult:
    """Instances that made it through normalization plus the excluded entries."""

    instances: List[ServiceInstance] = field(default_factory=list)
    errors: List[NormalizationIssue] = field(default_factory=list)


# PUBLIC_INTERFACE
def normalize(kind: ServiceKind, raw_list: Iterable[Any], *, now: Optional[datetime] = None) -> NormalizeResult:
    """
    Map a kind-specific provisioning list into ServiceInstance records.

    Entries without a usable service_id (or otherwise malformed) are excluded and recorded as validation errors;
    a repeated service_id is recorded as a conflict and only the first occurrence is kept.
    """
    arrived_at = now or utc_now()
    result = NormalizeResult()
    seen: set[str] = set()
    for index, entry in enumerate(raw_list):
        try:
            inst = _normalize_entry(kind, entry, arrived_at)
        except ValidationError as exc:
            result.errors.append(NormalizationIssue(index=index, code=ValidationError.code, detail=exc.detail))
            continue
        if inst.service_id in seen:
            result.errors.append(
                NormalizationIssue(index=index, code=ConflictError.code, detail=f"duplicate service_id {inst.service_id}")
            )
            continue
        seen.add(inst.service_id)
        result.instances.append(inst)
    return result


# PUBLIC_INTERFACE
def select_active(kind: ServiceKind, instances: Iterable[ServiceInstance]) -> Optional[ServiceInstance]:
    """First healthy instance of `kind` in input order, or None."""
    for inst in instances:
        if inst.kind == kind and inst.is_healthy and inst.status != InstanceStatus.removed:
            return inst
    return None


class InstanceStore:
    """
    In-memory registry records, keyed by service_id across all kinds.

    Removed instances move to a tombstone map and are never resurrected by later list responses.
    """

    def __init__(self) -> None:
        self._records: Dict[str, ServiceInstance] = {}
        self._removed: Dict[str, ServiceInstance] = {}

    def find(self, service_id: str) -> Optional[ServiceInstance]:
        return self._records.get(service_id)

    def get(self, service_id: str) -> ServiceInstance:
        inst = self._records.get(service_id)
        if inst is None:
            raise NotFoundError(f"service {service_id} not found", meta={"service_id": service_id})
        return inst

    def is_removed(self, service_id: str) -> bool:
        return service_id in self._removed

    def list(self, kind: Optional[ServiceKind] = None) -> List[ServiceInstance]:
        return [i for i in self._records.values() if kind is None or i.kind == kind]

    def put(self, inst: ServiceInstance) -> bool:
        """
        Whole-record replace. Returns False when the id is tombstoned.

        A record already in Removed status goes straight to the tombstone map and is reported as not stored.
        """
        if inst.service_id in self._removed:
            return False
        existing = self._records.get(inst.service_id)
        if existing is not None and existing.kind != inst.kind:
            raise ConflictError(
                f"service_id {inst.service_id} already registered as {existing.kind.value}",
                meta={"service_id": inst.service_id},
            )
        if inst.status == InstanceStatus.removed:
            self.tombstone(inst.model_copy(update={"is_healthy": False}))
            return False
        self._records[inst.service_id] = inst
        return True

    def replace_kind(self, kind: ServiceKind, instances: List[ServiceInstance]) -> List[ServiceInstance]:
        """Make `instances` (in order) the complete live set of `kind`."""
        for service_id in [sid for sid, i in self._records.items() if i.kind == kind]:
            del self._records[service_id]
        kept: List[ServiceInstance] = []
        for inst in instances:
            if self.put(inst):
                kept.append(inst)
        return kept

    def tombstone(self, inst: ServiceInstance) -> None:
        self._records.pop(inst.service_id, None)
        self._removed[inst.service_id] = inst


@dataclass
class RefreshOutcome:
    kind: ServiceKind
    instances: List[ServiceInstance]
    errors: List[NormalizationIssue]


class ServiceRegistry:
    """Uniform query surface over provisioned instances of every kind."""

    def __init__(self, client: ProvisioningClient, store: InstanceStore, health) -> None:
        # `health` is the HealthStateMachine; typed loosely to keep the import graph acyclic.
        self._client = client
        self._store = store
        self._health = health
        self._pinned: Dict[ServiceKind, str] = {}
        self._inflight: Dict[ServiceKind, asyncio.Future] = {}
        health.add_removal_listener(self._on_removed)

    @property
    def store(self) -> InstanceStore:
        return self._store

    def _on_removed(self, inst: ServiceInstance) -> None:
        if self._pinned.get(inst.kind) == inst.service_id:
            self._pinned.pop(inst.kind, None)

    # PUBLIC_INTERFACE
    async def refresh(self, kind: ServiceKind) -> RefreshOutcome:
        """
        List `kind` upstream and replace its records with the response on arrival.

        Concurrent callers for the same kind share one in-flight request.
        """
        fut = self._inflight.get(kind)
        if fut is None or fut.done():
            fut = asyncio.ensure_future(self._refresh_kind(kind))
            self._inflight[kind] = fut

            def _clear(done: asyncio.Future, k: ServiceKind = kind) -> None:
                if self._inflight.get(k) is done:
                    self._inflight.pop(k, None)

            fut.add_done_callback(_clear)
        return await asyncio.shield(fut)

    async def _refresh_kind(self, kind: ServiceKind) -> RefreshOutcome:
        raw = await self._client.list_services(kind)
        result = normalize(kind, raw)

        accepted: List[ServiceInstance] = []
        errors = list(result.errors)
        for inst in result.instances:
            existing = self._store.find(inst.service_id)
            if existing is not None and existing.kind != kind:
                errors.append(
                    NormalizationIssue(
                        index=0,
                        code=ConflictError.code,
                        detail=f"service_id {inst.service_id} already registered as {existing.kind.value}",
                    )
                )
                continue
            if inst.status == InstanceStatus.removed and existing is not None:
                # Upstream removed a live record: run the full transition so listeners fire.
                self._health.remove(inst.service_id)
            accepted.append(inst)

        kept = self._store.replace_kind(kind, accepted)
        if errors:
            logger.warning("Refresh of %s excluded %s entries: %s", kind.value, len(errors), [e.detail for e in errors])
        logger.info("Refreshed %s: %s instances", kind.value, len(kept))
        return RefreshOutcome(kind=kind, instances=kept, errors=errors)

    # PUBLIC_INTERFACE
    def list(self, kind: Optional[ServiceKind] = None) -> List[ServiceInstance]:
        """Live instances in registry order."""
        return self._store.list(kind)

    # PUBLIC_INTERFACE
    def get(self, service_id: str) -> ServiceInstance:
        """Fetch one live instance; unknown and removed ids raise NotFoundError."""
        return self._store.get(service_id)

    # PUBLIC_INTERFACE
    def select(self, kind: ServiceKind) -> Optional[ServiceInstance]:
        """The pinned instance of `kind` if still live, else the first healthy one."""
        pinned = self._pinned.get(kind)
        if pinned is not None:
            inst = self._store.find(pinned)
            if inst is not None:
                return inst
            self._pinned.pop(kind, None)
        return select_active(kind, self._store.list(kind))

    # PUBLIC_INTERFACE
    def set_selected(self, kind: ServiceKind, service_id: str) -> ServiceInstance:
        """Pin `service_id` as the active instance of `kind` (replacing any previous pin)."""
        inst = self._store.get(service_id)
        if inst.kind != kind:
            raise ValidationError(f"service {service_id} is a {inst.kind.value}, not a {kind.value}")
        self._pinned[kind] = service_id
        return inst

    # PUBLIC_INTERFACE
    async def launch(self, kind: ServiceKind, request: Optional[LaunchRequest] = None) -> ServiceInstance:
        """Launch upstream and register the returned record."""
        payload = request.model_dump(exclude_none=True) if request else {}
        if kind != ServiceKind.compute:
            for key in ("image", "cpu", "memory", "env", "user_id"):
                payload.pop(key, None)
        raw = await self._client.launch(kind, payload)
        result = normalize(kind, [raw])
        if not result.instances:
            detail = result.errors[0].detail if result.errors else "empty launch response"
            raise ValidationError(f"launch of {kind.value} returned an unusable record: {detail}")
        inst = result.instances[0]
        self._store.put(inst)
        logger.info("Launched %s service_id=%s", kind.value, inst.service_id)
        return inst

    # PUBLIC_INTERFACE
    async def check_health(self, service_id: str) -> HealthCheckResult:
        """
        Probe one instance and apply the result.

        Collaborator failures are reported as an unhealthy result rather than raised; an id that is unknown,
        or removed before or during the probe, raises NotFoundError.
        """
        inst = self._store.get(service_id)
        try:
            body = await self._client.check_health(inst.kind, service_id)
            result = HealthCheckResult(
                service_id=service_id,
                is_healthy=bool(body.get("is_healthy")),
                checked_at=utc_now(),
            )
        except ConsoleError as exc:
            logger.warning("Health probe failed for %s service_id=%s: %s", inst.kind.value, service_id, exc.detail)
            result = HealthCheckResult(service_id=service_id, is_healthy=False, checked_at=utc_now(), error=exc.detail)

        self._health.apply(result)
        return result

    # PUBLIC_INTERFACE
    async def remove(self, service_id: str) -> ServiceInstance:
        """Remove upstream, then transition the record to Removed."""
        if self._store.is_removed(service_id):
            raise StateError(f"service {service_id} is already removed", meta={"service_id": service_id})
        inst = self._store.get(service_id)
        try:
            await self._client.remove(inst.kind, service_id)
        except NotFoundError:
            logger.info("Upstream already forgot %s service_id=%s; removing locally", inst.kind.value, service_id)
        return self._health.remove(service_id)

