"""Read-only admin routes for operator dashboards."""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from fairshare_core.allocation import AllocationCoordinator, ResourceNotFoundError

logger = structlog.get_logger(__name__)


# Response models

class ResourceStatusResponse(BaseModel):
    """Resource status response model."""
    resource_id: str
    capacity: Dict[str, Any]
    configuration_valid: bool
    queue_depth: int
    active_grants: int
    reservation: Dict[str, Any]
    period: Dict[str, Any]
    period_start: str
    reset_at: str
    avg_session_seconds: float


class FlaggedRequesterResponse(BaseModel):
    """Flagged requester response model."""
    requester_id: str
    flag: str
    flagged_at: Optional[str] = None
    restricted_at: Optional[str] = None
    last_anomaly_at: Optional[str] = None
    cooldown_until: Optional[str] = None
    recent_samples: List[Dict[str, Any]] = Field(default_factory=list)
    reasons: List[str] = Field(default_factory=list)


class DashboardTotals(BaseModel):
    resources: int
    queued: int
    active_grants: int


class DashboardResponse(BaseModel):
    """Dashboard response model."""
    resources: List[ResourceStatusResponse]
    flagged_requesters: List[FlaggedRequesterResponse]
    invalid_configurations: Dict[str, List[str]]
    totals: DashboardTotals


def create_admin_router(coordinator: AllocationCoordinator) -> APIRouter:
    """Build the admin router bound to a coordinator.

    Mount it under any prefix, e.g. ``app.include_router(router, prefix="/admin")``.
    """
    router = APIRouter(tags=["admin"])

    @router.get("/resources", response_model=List[ResourceStatusResponse])
    async def list_resources(
        category: Optional[str] = Query(None, description="Filter by resource category"),
    ):
        """List status of every configured resource."""
        statuses = coordinator.list_resource_status()
        if category:
            statuses = [s for s in statuses if s["capacity"]["category"] == category]
        return statuses

    @router.get("/resources/{resource_id}", response_model=ResourceStatusResponse)
    async def get_resource(resource_id: str):
        """Get queue depth, reservation utilization and period stats of a resource."""
        try:
            return coordinator.get_resource_status(resource_id)
        except ResourceNotFoundError:
            raise HTTPException(status_code=404, detail="Resource not found")

    @router.get("/requesters/flagged", response_model=List[FlaggedRequesterResponse])
    async def list_flagged_requesters(
        flag: Optional[str] = Query(None, description="Filter by flag (watched, restricted)"),
    ):
        """List requesters currently watched or restricted for hoarding."""
        flagged = coordinator.get_flagged_requesters()
        if flag:
            flagged = [p for p in flagged if p["flag"] == flag]
        return flagged

    @router.get("/dashboard", response_model=DashboardResponse)
    async def get_dashboard():
        """Get the full operator dashboard."""
        dashboard = coordinator.get_dashboard()
        logger.debug(
            "admin_dashboard_read",
            resources=dashboard["totals"]["resources"],
            flagged=len(dashboard["flagged_requesters"]),
        )
        return dashboard

    return router
