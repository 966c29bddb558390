from __future__ import annotations

import logging
from typing import Callable, List

from src.api.errors import NotFoundError, StateError
from src.api.schemas.instances import HealthCheckResult, InstanceStatus, ServiceInstance
from src.api.services.registry import InstanceStore

logger = logging.getLogger(__name__)


RemovalListener = Callable[[ServiceInstance], None]


class HealthStateMachine:
    """
    Owns the health/lifecycle transitions of registry records.

    Provisioning -> {healthy, unhealthy} <-> {healthy, unhealthy} -> removed. Removed is terminal.
    """

    def __init__(self, store: InstanceStore):
        self._store = store
        self._listeners: List[RemovalListener] = []

    def add_removal_listener(self, listener: RemovalListener) -> None:
        self._listeners.append(listener)

    # PUBLIC_INTERFACE
    def apply(self, result: HealthCheckResult) -> ServiceInstance:
        """
        Apply a probe result to a live instance.

        The existence check runs before any mutation, so results for removed or unknown ids raise NotFoundError
        and change nothing.
        """
        inst = self._store.find(result.service_id)
        if inst is None or inst.status == InstanceStatus.removed:
            raise NotFoundError(
                f"service {result.service_id} not found",
                meta={"service_id": result.service_id, "removed": self._store.is_removed(result.service_id)},
            )

        update = {"is_healthy": result.is_healthy, "last_checked_at": result.checked_at}
        if inst.status == InstanceStatus.provisioning:
            update["status"] = InstanceStatus.running if result.is_healthy else InstanceStatus.error
            logger.info(
                "First probe for %s service_id=%s: %s",
                inst.kind.value,
                inst.service_id,
                update["status"].value,
            )
        elif inst.is_healthy != result.is_healthy:
            logger.info(
                "Health changed for %s service_id=%s: %s",
                inst.kind.value,
                inst.service_id,
                "healthy" if result.is_healthy else "unhealthy",
            )

        updated = inst.model_copy(update=update)
        self._store.put(updated)
        return updated

    # PUBLIC_INTERFACE
    def remove(self, service_id: str) -> ServiceInstance:
        """Transition any live state to Removed and notify listeners (probe cancellation, selection)."""
        if self._store.is_removed(service_id):
            raise StateError(f"service {service_id} is already removed", meta={"service_id": service_id})
        inst = self._store.get(service_id)

        removed = inst.model_copy(update={"status": InstanceStatus.removed, "is_healthy": False})
        self._store.tombstone(removed)
        logger.info("Removed %s service_id=%s", inst.kind.value, service_id)

        for listener in list(self._listeners):
            try:
                listener(removed)
            except Exception:
                logger.exception("Removal listener failed for service_id=%s", service_id)
        return removed
