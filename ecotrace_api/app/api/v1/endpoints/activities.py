"""
Activity endpoints for API v1.

Activities are recorded by integrations (git hooks, CI plugins, editor
extensions).  When the footprint is omitted it is calculated on
creation.  Listing happens through the dashboard endpoints.
"""

from fastapi import APIRouter, HTTPException, status

from ecotrace_api.app.schemas.activity import ActivityCreate, ActivityRead
from ecotrace_api.app.services.activity_service import ActivityService

router = APIRouter()


@router.post("/", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
async def create_activity(activity: ActivityCreate) -> ActivityRead:
    """Record an activity, calculating ``carbon_kg`` when it is not supplied."""
    return await ActivityService.create_activity(activity)


@router.get("/{activity_id}", response_model=ActivityRead)
async def get_activity(activity_id: str) -> ActivityRead:
    activity = await ActivityService.get_activity(activity_id)
    if activity is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Activity not found")
    return activity


@router.delete("/{activity_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_activity(activity_id: str) -> None:
    try:
        await ActivityService.delete_activity(activity_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return None
