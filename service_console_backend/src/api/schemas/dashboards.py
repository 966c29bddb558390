from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class WidgetPosition(BaseModel):
    """Grid placement of a widget; all fields numeric."""

    x: float = Field(0, ge=0)
    y: float = Field(0, ge=0)
    w: float = Field(1, gt=0)
    h: float = Field(1, gt=0)


class Widget(BaseModel):
    """A dashboard widget; `config` is opaque to the core."""

    id: str = Field(..., min_length=1, description="Widget id, unique within its dashboard.")
    name: str = Field(..., description="Widget title.")
    type: str = Field(..., min_length=1, description="Widget type (chart, stat, table, ...).")
    config: Dict[str, Any] = Field(default_factory=dict, description="Opaque widget configuration.")
    position: WidgetPosition = Field(default_factory=WidgetPosition)


class DashboardCreate(BaseModel):
    """Request body for creating (or fully replacing) a dashboard."""

    id: Optional[str] = Field(default=None, min_length=1, description="Optional client-chosen id.")
    name: str = Field(..., description="Dashboard name.")
    description: str = Field("", description="Dashboard description.")
    widgets: List[Widget] = Field(default_factory=list, description="Ordered widgets.")


class Dashboard(BaseModel):
    """A named, ordered collection of widgets."""

    id: str
    name: str
    description: str = ""
    widgets: List[Widget] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class DashboardListResponse(BaseModel):
    items: List[Dashboard]
    total: int = Field(..., ge=0)
