from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from src.api.errors import NotFoundError
from src.api.schemas.common import as_utc, utc_now
from src.api.schemas.metrics import QueryCreate, QueryParams, QueryUpdate, QueryViewOut, ResultState
from src.api.services.metrics_engine import MetricsQueryEngine, parse_function

logger = logging.getLogger(__name__)


def _normalized(params: QueryParams) -> QueryParams:
    return params.model_copy(update={"start": as_utc(params.start), "end": as_utc(params.end)})


class QueryView:
    """
    Current query parameters plus the last computed value.

    The state is derived: pending while a recompute is in flight or before the first value exists, stale when
    the parameters no longer match the ones the value was computed for, fresh otherwise.
    """

    def __init__(self, view_id: str, params: QueryParams):
        self.id = view_id
        self.params = _normalized(params)
        self.value: Optional[float] = None
        self.computed_at: Optional[datetime] = None
        self.computed_for: Optional[QueryParams] = None
        self._inflight = 0

    @property
    def state(self) -> ResultState:
        if self._inflight or self.computed_for is None:
            return ResultState.pending
        if self.computed_for != self.params:
            return ResultState.stale
        return ResultState.fresh

    def to_out(self) -> QueryViewOut:
        state = self.state
        return QueryViewOut(
            id=self.id,
            params=self.params,
            state=state,
            value=None if state == ResultState.pending else self.value,
            computed_at=self.computed_at,
            computed_for=self.computed_for,
        )


class QueryViewRegistry:
    """Open query views; recomputation is always explicit."""

    def __init__(self, engine: MetricsQueryEngine):
        self._engine = engine
        self._views: Dict[str, QueryView] = {}

    def _get(self, view_id: str) -> QueryView:
        view = self._views.get(view_id)
        if view is None:
            raise NotFoundError(f"query view {view_id} not found", meta={"id": view_id})
        return view

    # PUBLIC_INTERFACE
    async def create(self, payload: QueryCreate) -> QueryViewOut:
        """Open a view and compute its first value."""
        params = QueryParams(
            service_id=payload.service_id,
            metric_type=payload.metric_type,
            function=parse_function(payload.function),
            start=payload.start,
            end=payload.end,
        )
        view = QueryView(str(uuid.uuid4()), params)
        self._views[view.id] = view
        return await self.recompute(view.id)

    # PUBLIC_INTERFACE
    def get(self, view_id: str) -> QueryViewOut:
        return self._get(view_id).to_out()

    def list(self) -> List[QueryViewOut]:
        return [v.to_out() for v in self._views.values()]

    # PUBLIC_INTERFACE
    def update(self, view_id: str, patch: QueryUpdate) -> QueryViewOut:
        """Change parameters without recomputing; a computed value stays visible but goes stale."""
        view = self._get(view_id)
        changes = patch.model_dump(exclude_unset=True, exclude_none=True)
        if "function" in changes:
            changes["function"] = parse_function(changes["function"])
        view.params = _normalized(view.params.model_copy(update=changes))
        return view.to_out()

    # PUBLIC_INTERFACE
    async def recompute(self, view_id: str) -> QueryViewOut:
        """Stale -> pending -> fresh. On failure the previous value and state are kept and the error propagates."""
        view = self._get(view_id)
        params = view.params
        view._inflight += 1
        try:
            outcome = await self._engine.aggregate(
                params.service_id, params.metric_type, params.start, params.end, params.function
            )
        finally:
            view._inflight -= 1

        # Last arrival wins; if params moved meanwhile the view reads as stale.
        view.value = outcome.value
        view.computed_for = params
        view.computed_at = utc_now()
        return view.to_out()

    # PUBLIC_INTERFACE
    def delete(self, view_id: str) -> None:
        self._get(view_id)
        self._views.pop(view_id, None)
