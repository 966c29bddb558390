from __future__ import annotations

import logging
from typing import Dict, List, Optional

from bson import ObjectId

from src.api.db.mongo import DocumentStore, WriteThrough
from src.api.errors import ConflictError, NotFoundError
from src.api.schemas.common import as_utc, utc_now
from src.api.schemas.dashboards import Dashboard, DashboardCreate, Widget

logger = logging.getLogger(__name__)


def _check_widget_ids(widgets: List[Widget]) -> None:
    seen = set()
    for widget in widgets:
        if widget.id in seen:
            raise ConflictError(f"duplicate widget id {widget.id}", meta={"widget_id": widget.id})
        seen.add(widget.id)


class DashboardRegistry(WriteThrough):
    """CRUD over dashboards; enforces only structural invariants (unique widget ids)."""

    def __init__(self, persist: Optional[DocumentStore] = None):
        self._dashboards: Dict[str, Dashboard] = {}
        self._persist = persist

    async def hydrate(self) -> None:
        if self._persist is None:
            return
        for doc in await self._persist.load_all():
            dash = Dashboard.model_validate(doc)
            self._dashboards[dash.id] = dash
        logger.info("Hydrated %s dashboards", len(self._dashboards))

    async def _store(self, dash: Dashboard) -> Dashboard:
        self._dashboards[dash.id] = dash
        await self._save(self._persist, dash.model_dump(mode="json"))
        return dash

    # PUBLIC_INTERFACE
    def list(self) -> List[Dashboard]:
        """Dashboards, oldest first."""
        return sorted(self._dashboards.values(), key=lambda d: as_utc(d.created_at))

    # PUBLIC_INTERFACE
    def get(self, dashboard_id: str) -> Dashboard:
        dash = self._dashboards.get(dashboard_id)
        if dash is None:
            raise NotFoundError(f"dashboard {dashboard_id} not found", meta={"dashboard_id": dashboard_id})
        return dash

    # PUBLIC_INTERFACE
    async def create(self, payload: DashboardCreate) -> Dashboard:
        dashboard_id = payload.id or str(ObjectId())
        if dashboard_id in self._dashboards:
            raise ConflictError(f"dashboard {dashboard_id} already exists", meta={"dashboard_id": dashboard_id})
        _check_widget_ids(payload.widgets)
        now = utc_now()
        dash = Dashboard(
            id=dashboard_id,
            name=payload.name,
            description=payload.description,
            widgets=list(payload.widgets),
            created_at=now,
            updated_at=now,
        )
        logger.info("Created dashboard id=%s widgets=%s", dash.id, len(dash.widgets))
        return await self._store(dash)

    # PUBLIC_INTERFACE
    async def replace(self, dashboard_id: str, payload: DashboardCreate) -> Dashboard:
        """Full replace of name, description and widgets; the id in the path wins."""
        existing = self.get(dashboard_id)
        _check_widget_ids(payload.widgets)
        dash = existing.model_copy(
            update={
                "name": payload.name,
                "description": payload.description,
                "widgets": list(payload.widgets),
                "updated_at": utc_now(),
            }
        )
        return await self._store(dash)

    # PUBLIC_INTERFACE
    async def delete(self, dashboard_id: str) -> None:
        self.get(dashboard_id)
        self._dashboards.pop(dashboard_id, None)
        await self._drop(self._persist, dashboard_id)
        logger.info("Deleted dashboard id=%s", dashboard_id)

    # PUBLIC_INTERFACE
    async def add_widget(self, dashboard_id: str, widget: Widget) -> Dashboard:
        dash = self.get(dashboard_id)
        _check_widget_ids(dash.widgets + [widget])
        return await self._store(
            dash.model_copy(update={"widgets": dash.widgets + [widget], "updated_at": utc_now()})
        )

    # PUBLIC_INTERFACE
    async def update_widget(self, dashboard_id: str, widget_id: str, widget: Widget) -> Dashboard:
        """Replace one widget in place; the widget may be renamed to an id not used by its siblings."""
        dash = self.get(dashboard_id)
        widgets = list(dash.widgets)
        for index, existing in enumerate(widgets):
            if existing.id == widget_id:
                widgets[index] = widget
                break
        else:
            raise NotFoundError(f"widget {widget_id} not found in dashboard {dashboard_id}", meta={"widget_id": widget_id})
        _check_widget_ids(widgets)
        return await self._store(dash.model_copy(update={"widgets": widgets, "updated_at": utc_now()}))

    # PUBLIC_INTERFACE
    async def remove_widget(self, dashboard_id: str, widget_id: str) -> Dashboard:
        dash = self.get(dashboard_id)
        widgets = [w for w in dash.widgets if w.id != widget_id]
        if len(widgets) == len(dash.widgets):
            raise NotFoundError(f"widget {widget_id} not found in dashboard {dashboard_id}", meta={"widget_id": widget_id})
        return await self._store(dash.model_copy(update={"widgets": widgets, "updated_at": utc_now()}))
