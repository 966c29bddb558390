from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, computed_field


class ServiceKind(str, Enum):
    """Resource kinds the provisioning API can launch."""

    bucket = "Bucket"
    sql_database = "SqlDatabase"
    document_store = "DocumentStore"
    queue = "Queue"
    secrets_vault = "SecretsVault"
    compute = "Compute"


class InstanceStatus(str, Enum):
    """Lifecycle status of a provisioned instance."""

    provisioning = "Provisioning"
    running = "Running"
    stopped = "Stopped"
    error = "Error"
    removed = "Removed"


class HealthState(str, Enum):
    """Health state machine position derived from status and probe history."""

    provisioning = "provisioning"
    healthy = "healthy"
    unhealthy = "unhealthy"
    removed = "removed"


class ResourceLimits(BaseModel):
    """Resource caps (SQL and compute kinds only)."""

    cpu_percent: Optional[float] = Field(default=None, ge=0, description="CPU cap in percent of one core.")
    ram_mb: Optional[float] = Field(default=None, ge=0, description="Memory cap in MB.")
    disk_gb: Optional[float] = Field(default=None, ge=0, description="Disk cap in GB.")


class ServiceInstance(BaseModel):
    """One provisioned backing-service process, normalized across kinds."""

    service_id: str = Field(..., min_length=1, description="Opaque, globally unique service identifier.")
    kind: ServiceKind = Field(..., description="Resource kind.")
    node_id: Optional[str] = Field(default=None, description="Node hosting the instance.")
    container_id: Optional[str] = Field(default=None, description="Backing container id, when known.")
    address: Optional[str] = Field(default=None, description="Network address (IP or hostname).")
    port: Optional[int] = Field(default=None, ge=0, le=65535, description="Published port.")
    url: Optional[str] = Field(default=None, description="Service URL.")
    status: InstanceStatus = Field(InstanceStatus.provisioning, description="Lifecycle status.")
    is_healthy: bool = Field(False, description="Outcome of the last applied health probe.")
    created_at: datetime = Field(..., description="UTC creation timestamp.")
    last_checked_at: Optional[datetime] = Field(default=None, description="When the last probe was applied.")
    resource_limits: Optional[ResourceLimits] = Field(default=None, description="SQL/compute resource caps.")
    instance_name: Optional[str] = Field(default=None, description="Optional display name.")
    details: Dict[str, Any] = Field(default_factory=dict, description="Kind-specific optional fields.")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def health_state(self) -> HealthState:
        if self.status == InstanceStatus.removed:
            return HealthState.removed
        if self.last_checked_at is None and self.status == InstanceStatus.provisioning:
            return HealthState.provisioning
        return HealthState.healthy if self.is_healthy else HealthState.unhealthy


class HealthCheckResult(BaseModel):
    """One health probe outcome."""

    service_id: str = Field(..., description="Probed service id.")
    is_healthy: bool = Field(..., description="Probe outcome.")
    checked_at: datetime = Field(..., description="UTC timestamp of the probe.")
    error: Optional[str] = Field(default=None, description="Transport or upstream error detail, if any.")


class NormalizationIssue(BaseModel):
    """A raw provisioning entry that was excluded from the registry."""

    index: int = Field(..., ge=0, description="Position of the entry in the raw list.")
    code: str = Field(..., description="validation_error | conflict")
    detail: str = Field(..., description="Why the entry was excluded.")


class InstanceListResponse(BaseModel):
    """Envelope for listing instances."""

    items: List[ServiceInstance] = Field(..., description="Instances in registry order.")
    total: int = Field(..., ge=0, description="Total number of instances returned.")


class RefreshResponse(BaseModel):
    """Result of refreshing one kind from the provisioning API."""

    kind: ServiceKind
    items: List[ServiceInstance] = Field(..., description="Instances of this kind after the refresh.")
    total: int = Field(..., ge=0)
    rejected: List[NormalizationIssue] = Field(default_factory=list, description="Entries excluded during normalization.")


class ActiveInstanceResponse(BaseModel):
    """The selected instance for a kind (null when none is healthy)."""

    kind: ServiceKind
    instance: Optional[ServiceInstance] = None


class LaunchRequest(BaseModel):
    """Optional launch configuration; SQL and compute kinds honor resource caps."""

    instance_name: Optional[str] = Field(default=None, description="Display name for the new instance.")
    max_cpu_percent: Optional[float] = Field(default=None, ge=0, description="SQL: CPU cap in percent.")
    max_ram_mb: Optional[float] = Field(default=None, ge=0, description="SQL: memory cap in MB.")
    max_disk_gb: Optional[float] = Field(default=None, ge=0, description="SQL: disk cap in GB.")
    database_name: Optional[str] = Field(default=None, description="SQL: initial database name.")
    image: Optional[str] = Field(default=None, description="Compute: container image.")
    cpu: Optional[float] = Field(default=None, ge=0, description="Compute: CPU cores.")
    memory: Optional[str] = Field(default=None, description="Compute: memory limit (e.g. '512m').")
    env: Dict[str, str] = Field(default_factory=dict, description="Compute: environment variables.")
    user_id: Optional[str] = Field(default=None, description="Compute: owning user id.")
