"""
Carbon calculation endpoints for API v1.

These routes expose the calculation pipeline (``POST /carbon``) and the
transparency data behind it: methodology versions, data sources,
confidence indicators, the audit trail and the validation settings.
All responses use the common success envelope.
"""

import time
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status

from ecotrace_api.app.api.v1.responses import envelope
from ecotrace_api.app.schemas.calculation import (
    ActivityData,
    ConfidenceLevel,
    MethodologyDeprecate,
    MethodologyVersionCreate,
    ValidationConfigUpdate,
)
from ecotrace_api.app.services.audit_service import AuditService
from ecotrace_api.app.services.carbon_service import CarbonService
from ecotrace_api.app.services.validation_service import validation_service

router = APIRouter()


@router.post("/carbon")
async def calculate_carbon(activity: ActivityData, user_id: Optional[str] = Query(None)):
    """Calculate the footprint of an activity.

    The response holds the result, its validation, the audit id and
    timing.  Invalid activity data still returns 200 with a fallback
    result whose validation carries ``SYSTEM_ERROR``.
    """
    started = time.perf_counter()
    user_context = {"user_id": user_id} if user_id else None
    response = await CarbonService.calculate_carbon(activity, user_context=user_context)
    return envelope(response, started)


@router.get("/methodology")
async def get_methodology():
    started = time.perf_counter()
    return envelope(await CarbonService.get_methodology(), started)


@router.post("/methodology/versions", status_code=status.HTTP_201_CREATED)
async def create_methodology_version(payload: MethodologyVersionCreate):
    """Create a new methodology version derived from the current one."""
    started = time.perf_counter()
    version = await CarbonService.create_methodology_version(
        payload.changes,
        created_by=payload.created_by,
        assumptions=payload.assumptions,
        standards=payload.standards,
    )
    return envelope(version, started, status_code=status.HTTP_201_CREATED)


@router.post("/methodology/versions/{version}/deprecate")
async def deprecate_methodology_version(version: str, payload: Optional[MethodologyDeprecate] = None):
    started = time.perf_counter()
    superseded_by = payload.superseded_by if payload else None
    try:
        deprecated = await AuditService.deprecate_methodology_version(version, superseded_by)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return envelope(deprecated, started)


@router.get("/sources")
async def get_data_sources():
    started = time.perf_counter()
    return envelope(await CarbonService.get_data_sources(), started)


@router.get("/confidence")
async def get_confidence_indicators():
    started = time.perf_counter()
    return envelope(await CarbonService.get_confidence_indicators(), started)


@router.get("/audit")
async def query_audit_records(
    request_id: Optional[str] = Query(None),
    activity_type: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    confidence_level: Optional[ConfidenceLevel] = Query(None),
    min_carbon: Optional[float] = Query(None, ge=0),
    max_carbon: Optional[float] = Query(None, ge=0),
    limit: int = Query(50, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    """Filter audit records, newest first.

    ``start_date`` and ``end_date`` are ISO timestamps; an unparsable
    value returns 400.
    """
    started = time.perf_counter()
    try:
        records = await AuditService.query_audit_records(
            request_id=request_id,
            activity_type=activity_type,
            user_id=user_id,
            start=start_date,
            end=end_date,
            confidence_level=confidence_level,
            min_carbon=min_carbon,
            max_carbon=max_carbon,
            limit=limit,
            offset=offset,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return envelope(records, started)


@router.get("/audit/statistics")
async def get_audit_statistics(
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
):
    started = time.perf_counter()
    try:
        statistics = await AuditService.get_audit_statistics(start=start_date, end=end_date)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return envelope(statistics, started)


@router.get("/audit/{audit_id}")
async def get_audit_trail(audit_id: str):
    started = time.perf_counter()
    try:
        trail = await CarbonService.get_audit_trail(audit_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return envelope(trail, started)


@router.get("/validation-config")
async def get_validation_config():
    started = time.perf_counter()
    return envelope(validation_service.get_validation_config(), started)


@router.put("/validation-config")
async def update_validation_config(payload: ValidationConfigUpdate):
    started = time.perf_counter()
    try:
        config = validation_service.update_validation_config(**payload.model_dump(exclude_none=True))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return envelope(config, started)


@router.get("/health")
async def get_health():
    """Service health and info; 503 when the service is unhealthy."""
    started = time.perf_counter()
    health = await CarbonService.get_service_health()
    data = {"health": health, "info": CarbonService.get_service_info()}
    if health["overall"] == "unhealthy":
        return envelope(data, started, status_code=status.HTTP_503_SERVICE_UNAVAILABLE, success=False)
    return envelope(data, started)
