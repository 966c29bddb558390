from __future__ import annotations

from fastapi import APIRouter, Path, Request, status

from src.api.schemas.common import ErrorResponse
from src.api.schemas.dashboards import Dashboard, DashboardCreate, DashboardListResponse, Widget
from src.api.state import get_state

router = APIRouter(prefix="/api/dashboards", tags=["Dashboards"])


@router.get(
    "",
    response_model=DashboardListResponse,
    summary="List dashboards",
    description="Return all dashboards, oldest first.",
    operation_id="list_dashboards",
)
def list_dashboards(request: Request) -> DashboardListResponse:
    """List dashboards."""
    items = get_state(request.app).dashboards.list()
    return DashboardListResponse(items=items, total=len(items))


@router.post(
    "",
    response_model=Dashboard,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Create dashboard",
    description="Create a dashboard. Widget ids must be unique within it; a reused dashboard id is a conflict.",
    operation_id="create_dashboard",
)
async def create_dashboard(request: Request, payload: DashboardCreate) -> Dashboard:
    """Create a dashboard."""
    return await get_state(request.app).dashboards.create(payload)


@router.get(
    "/{dashboard_id}",
    response_model=Dashboard,
    responses={404: {"model": ErrorResponse}},
    summary="Get dashboard",
    description="Fetch a single dashboard by id.",
    operation_id="get_dashboard",
)
def get_dashboard(request: Request, dashboard_id: str = Path(..., description="Dashboard id")) -> Dashboard:
    """Get a dashboard."""
    return get_state(request.app).dashboards.get(dashboard_id)


@router.put(
    "/{dashboard_id}",
    response_model=Dashboard,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Replace dashboard",
    description="Replace name, description and widgets of a dashboard.",
    operation_id="put_dashboard",
)
async def put_dashboard(
    request: Request,
    payload: DashboardCreate,
    dashboard_id: str = Path(..., description="Dashboard id"),
) -> Dashboard:
    """Replace a dashboard."""
    return await get_state(request.app).dashboards.replace(dashboard_id, payload)


@router.delete(
    "/{dashboard_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    summary="Delete dashboard",
    description="Delete a dashboard by id.",
    operation_id="delete_dashboard",
)
async def delete_dashboard(request: Request, dashboard_id: str = Path(..., description="Dashboard id")) -> None:
    """Delete a dashboard."""
    await get_state(request.app).dashboards.delete(dashboard_id)
    return None


@router.post(
    "/{dashboard_id}/widgets",
    response_model=Dashboard,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Add widget",
    description="Append a widget; its id must not already be used in the dashboard.",
    operation_id="add_dashboard_widget",
)
async def add_widget(
    request: Request,
    payload: Widget,
    dashboard_id: str = Path(..., description="Dashboard id"),
) -> Dashboard:
    """Add a widget."""
    return await get_state(request.app).dashboards.add_widget(dashboard_id, payload)


@router.put(
    "/{dashboard_id}/widgets/{widget_id}",
    response_model=Dashboard,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Replace widget",
    description="Replace one widget in place.",
    operation_id="put_dashboard_widget",
)
async def put_widget(
    request: Request,
    payload: Widget,
    dashboard_id: str = Path(..., description="Dashboard id"),
    widget_id: str = Path(..., description="Widget id"),
) -> Dashboard:
    """Replace a widget."""
    return await get_state(request.app).dashboards.update_widget(dashboard_id, widget_id, payload)


@router.delete(
    "/{dashboard_id}/widgets/{widget_id}",
    response_model=Dashboard,
    responses={404: {"model": ErrorResponse}},
    summary="Remove widget",
    description="Remove one widget from a dashboard.",
    operation_id="delete_dashboard_widget",
)
async def delete_widget(
    request: Request,
    dashboard_id: str = Path(..., description="Dashboard id"),
    widget_id: str = Path(..., description="Widget id"),
) -> Dashboard:
    """Remove a widget."""
    return await get_state(request.app).dashboards.remove_widget(dashboard_id, widget_id)
