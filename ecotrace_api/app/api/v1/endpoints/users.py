"""
User endpoints for API v1.

These routes register developers and read their profiles.  User ids
are chosen by the caller so that activities can reference them.
"""

from typing import List

from fastapi import APIRouter, HTTPException, Query, status

from ecotrace_api.app.schemas.user import UserCreate, UserRead
from ecotrace_api.app.services.user_service import UserService

router = APIRouter()


@router.post("/", response_model=UserRead, status_code=status.HTTP_201_CREATED)
async def create_user(user: UserCreate) -> UserRead:
    """Register a user.  Returns 409 if the id or username is taken."""
    try:
        return await UserService.create_user(user)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e


@router.get("/", response_model=List[UserRead])
async def list_users(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> List[UserRead]:
    return await UserService.list_users(limit=limit, offset=offset)


@router.get("/{user_id}", response_model=UserRead)
async def get_user(user_id: str) -> UserRead:
    user = await UserService.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user
