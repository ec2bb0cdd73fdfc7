"""
Top-level router for version 1 of the API.

This router aggregates the domain routers (calculation, dashboard,
activities, users) under a unified prefix.  The realtime routes are
mounted at the application root by ``main.py``.
"""

from fastapi import APIRouter

from .endpoints import activities, calculation, dashboard, users

router = APIRouter()

router.include_router(calculation.router, prefix="/calculation", tags=["calculation"])
router.include_router(dashboard.router, prefix="/dashboard", tags=["dashboard"])
router.include_router(activities.router, prefix="/activities", tags=["activities"])
router.include_router(users.router, prefix="/users", tags=["users"])
