"""
Dashboard endpoints for API v1.

Read-only aggregations of a user's activities (totals, pages, stats,
trends), the leaderboard and the request performance metrics.  A test
broadcast endpoint is available outside production to exercise the
realtime channels from a browser.
"""

import time
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from ecotrace_api.app.api.v1.responses import envelope
from ecotrace_api.app.core.config import settings
from ecotrace_api.app.core.performance import performance_monitor
from ecotrace_api.app.core.realtime import hub
from ecotrace_api.app.core.timeutils import to_iso
from ecotrace_api.app.services.dashboard_service import DashboardService

router = APIRouter()

DashboardPeriod = Literal["daily", "weekly", "monthly", "all_time"]
Granularity = Literal["hourly", "daily", "weekly"]
ActivityFilter = Literal["all", "commit", "pr", "ci_run", "deployment", "local_dev"]


class BroadcastTest(BaseModel):
    type: str = Field(..., examples=["carbon_updated"])
    data: Dict[str, Any] = Field(default_factory=dict, examples=[{"carbon_kg": 0.0021}])


@router.get("/carbon/{user_id}")
async def get_carbon_data(user_id: str, period: DashboardPeriod = Query("weekly")):
    """Carbon totals for the period compared with the previous one."""
    started = time.perf_counter()
    return envelope(await DashboardService.get_user_carbon_data(user_id, period), started)


@router.get("/activities/{user_id}")
async def get_activities(
    user_id: str,
    limit: int = Query(25, ge=1),
    offset: int = Query(0, ge=0),
    type: ActivityFilter = Query("all"),
    since: Optional[str] = Query(None),
):
    """A page of the user's activities, newest first.  ``limit`` is capped at 100."""
    started = time.perf_counter()
    try:
        page = await DashboardService.get_user_activities(
            user_id, limit=limit, offset=offset, type=type, since=since
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return envelope(page, started)


@router.get("/stats/{user_id}")
async def get_stats(user_id: str, period: DashboardPeriod = Query("weekly")):
    started = time.perf_counter()
    return envelope(await DashboardService.get_user_stats(user_id, period), started)


@router.get("/trends/{user_id}")
async def get_trends(
    user_id: str,
    period: DashboardPeriod = Query("weekly"),
    granularity: Granularity = Query("daily"),
    days: int = Query(30, ge=1, le=365),
):
    started = time.perf_counter()
    trends = await DashboardService.get_user_trends(
        user_id, period=period, granularity=granularity, days=days
    )
    return envelope(trends, started)


@router.get("/leaderboard")
async def get_leaderboard(
    period: DashboardPeriod = Query("weekly"),
    limit: int = Query(50, ge=1, le=500),
    user_id: Optional[str] = Query(None),
):
    started = time.perf_counter()
    leaderboard = await DashboardService.get_leaderboard_data(period=period, limit=limit, user_id=user_id)
    return envelope(leaderboard, started)


@router.post("/broadcast/test/{user_id}")
async def broadcast_test(user_id: str, payload: BroadcastTest):
    """Publish a test event for ``user_id`` (not available in production)."""
    if settings.is_production:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    timestamp = to_iso()
    data = payload.data
    if payload.type == "carbon_updated":
        hub.broadcast_carbon_update(
            user_id,
            data.get("activity_id", "test_activity"),
            float(data.get("carbon_kg", 0.001)),
            data.get("confidence", "medium"),
            timestamp,
        )
    elif payload.type == "activity_created":
        hub.broadcast_activity_update(
            user_id,
            data.get("activity_id", "test_activity"),
            data.get("activity_type", "commit"),
            data.get("repository"),
            timestamp,
        )
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported broadcast type: {payload.type}",
        )
    return {
        "success": True,
        "message": f"Test {payload.type} broadcast sent",
        "type": payload.type,
        "user_id": user_id,
        "timestamp": timestamp,
    }


@router.get("/performance")
async def get_performance():
    started = time.perf_counter()
    return envelope(performance_monitor.get_metrics(), started)
