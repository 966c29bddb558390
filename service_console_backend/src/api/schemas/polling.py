from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from src.api.schemas.instances import ServiceKind


class LeaseCreate(BaseModel):
    """Request polling for a set of kinds until released or expired."""

    kinds: List[ServiceKind] = Field(..., min_length=1, description="Kinds whose health should be kept current.")
    holder: Optional[str] = Field(default=None, description="Free-form holder label (view name).")
    ttl_sec: Optional[int] = Field(default=None, ge=1, le=24 * 3600, description="Lease TTL; defaults to config.")


class LeaseOut(BaseModel):
    id: str
    kinds: List[ServiceKind]
    holder: Optional[str] = None
    expires_at: datetime
    interval_sec: int = Field(..., description="Poll interval the lease is served at.")
