"""
Carbon calculation service.

``CarbonService`` is the entry point used by the calculation endpoints
and by ``ActivityService``.  A calculation request runs through input
validation, the calculation engine and result validation, and is then
written to the audit trail.  Any failure along the way still produces
a response: a conservative fallback result with a ``SYSTEM_ERROR``
validation, which is audited as well.

The remaining methods expose methodology, data source, confidence and
health information for transparency.
"""

import asyncio
import logging
import sqlite3
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from ecotrace_api.app.core.config import settings
from ecotrace_api.app.schemas.calculation import (
    ActivityData,
    CalculationMethodology,
    CalculationResponse,
    PerformanceMetrics,
    ValidationError,
    ValidationResult,
)
from ecotrace_api.app.services.audit_service import AuditService
from ecotrace_api.app.services.calculation_engine import (
    ENGINE_VERSION,
    calculation_engine,
    generate_request_id,
)
from ecotrace_api.app.services.egrid_service import egrid_service
from ecotrace_api.app.services.external_api_service import external_api_service
from ecotrace_api.app.services.validation_service import validation_service

logger = logging.getLogger(__name__)

SERVICE_NAME = "CarbonCalculationService"
FEATURES = [
    "Multi-modal carbon calculation",
    "EPA eGRID integration",
    "External API integrations",
    "Real-time validation",
    "Cross-reference checks",
    "Audit trail",
    "Methodology versioning",
    "Uncertainty quantification",
]


class InputValidationError(ValueError):
    """Raised when an activity fails input validation."""

    def __init__(self, validation: ValidationResult) -> None:
        self.validation = validation
        messages = ", ".join(error.message for error in validation.errors) or "confidence below threshold"
        super().__init__(f"Input validation failed: {messages}")


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)


def _last_day() -> Dict[str, str]:
    now = datetime.now(timezone.utc)
    return {"start": (now - timedelta(hours=24)).isoformat(), "end": now.isoformat()}


class CarbonService:
    """Service class orchestrating calculation, validation and audit."""

    @classmethod
    async def calculate_carbon(
        cls, activity: ActivityData, user_context: Optional[Dict[str, Any]] = None
    ) -> CalculationResponse:
        """Calculate, validate and audit the footprint of ``activity``."""
        started = time.perf_counter()
        request_id = generate_request_id()
        logger.info(
            "Carbon calculation request %s started (%s)",
            request_id,
            activity.activity_type,
            extra={"context": {"request_id": request_id, "activity_type": activity.activity_type}},
        )
        input_validation: Optional[ValidationResult] = None
        try:
            validation_started = time.perf_counter()
            input_validation = await validation_service.validate_activity_data(activity)
            validation_ms = _elapsed_ms(validation_started)
            if not input_validation.is_valid:
                raise InputValidationError(input_validation)

            calculation_started = time.perf_counter()
            calculation = await calculation_engine.calculate_carbon(activity, request_id)
            calculation_ms = _elapsed_ms(calculation_started)

            result_started = time.perf_counter()
            validation = await validation_service.validate_calculation_result(calculation, activity)
            validation_ms += _elapsed_ms(result_started)

            total_ms = _elapsed_ms(started)
            performance = PerformanceMetrics(
                calculation_time_ms=calculation_ms,
                data_fetch_time_ms=round(calculation_ms * 0.3, 3),
                validation_time_ms=round(validation_ms, 3),
                total_time_ms=total_ms,
            )
            audit_id = await AuditService.record_calculation(activity, calculation, performance, user_context)
            await AuditService.record_validation(request_id, validation, input_validation)
        except InputValidationError as exc:
            logger.warning("Carbon calculation %s rejected: %s", request_id, exc)
            return await cls._fallback_response(activity, exc, request_id, started, user_context, input_validation)
        except Exception as exc:
            logger.exception("Carbon calculation %s failed", request_id)
            return await cls._fallback_response(activity, exc, request_id, started, user_context, input_validation)

        if total_ms > settings.performance_target_ms:
            logger.warning(
                "Performance target exceeded for %s: %.1fms (target %.0fms)",
                request_id,
                total_ms,
                settings.performance_target_ms,
            )
        logger.info(
            "Carbon calculation %s completed: %.5f kg (%s), audit %s",
            request_id,
            calculation.carbon_kg,
            calculation.confidence,
            audit_id,
        )
        return CalculationResponse(
            calculation=calculation,
            validation=validation,
            input_validation=input_validation,
            audit_id=audit_id,
            performance=performance,
        )

    @classmethod
    async def _fallback_response(
        cls,
        activity: ActivityData,
        error: Exception,
        request_id: str,
        started: float,
        user_context: Optional[Dict[str, Any]],
        input_validation: Optional[ValidationResult],
    ) -> CalculationResponse:
        calculation = calculation_engine.create_fallback_result(activity, error, request_id)
        validation = ValidationResult(
            is_valid=False,
            errors=[
                ValidationError(
                    field="system",
                    code="SYSTEM_ERROR",
                    message=f"System error during calculation: {error}",
                    severity="critical",
                )
            ],
            confidence=0.0,
        )
        total_ms = _elapsed_ms(started)
        performance = PerformanceMetrics(
            calculation_time_ms=total_ms,
            data_fetch_time_ms=0.0,
            validation_time_ms=0.0,
            total_time_ms=total_ms,
        )
        audit_id = await AuditService.record_calculation(activity, calculation, performance, user_context)
        await AuditService.record_validation(request_id, validation, input_validation)
        return CalculationResponse(
            calculation=calculation,
            validation=validation,
            input_validation=input_validation,
            audit_id=audit_id,
            performance=performance,
        )

    # Transparency -------------------------------------------------------

    @classmethod
    async def get_methodology(cls) -> Dict[str, Any]:
        current = await AuditService.get_current_methodology_version()
        return {
            "current": current,
            "all_versions": await AuditService.get_all_methodology_versions(),
            "standards": current["methodology"].get("standards", []),
            "last_updated": current["created_at"],
        }

    @classmethod
    async def create_methodology_version(
        cls,
        changes,
        created_by: str = "system",
        assumptions=None,
        standards=None,
    ) -> Dict[str, Any]:
        """Create a new version from the current one with optional overrides."""
        current = await AuditService.get_current_methodology_version()
        methodology = CalculationMethodology(**current["methodology"])
        updates: Dict[str, Any] = {}
        if assumptions is not None:
            updates["assumptions"] = list(assumptions)
        if standards is not None:
            updates["standards"] = list(standards)
        if updates:
            methodology = methodology.model_copy(update=updates)
        version = await AuditService.create_methodology_version(methodology, list(changes), created_by)
        return await AuditService.get_methodology_version(version)

    @classmethod
    async def get_data_sources(cls) -> Dict[str, Any]:
        epa_source = await asyncio.to_thread(egrid_service.get_data_source_info)
        external_sources = external_api_service.get_data_sources()
        health = external_api_service.health_check()
        epa_validation = await asyncio.to_thread(egrid_service.validate_data_integrity)
        return {
            "sources": [epa_source.model_dump(), *(source.model_dump() for source in external_sources)],
            "health": health,
            "epa_validation": epa_validation,
            "freshness": {
                "epa_grid": epa_source.last_updated,
                "external_apis": health["last_updated"],
            },
        }

    @classmethod
    async def get_confidence_indicators(cls) -> Dict[str, Any]:
        breakers = external_api_service.get_circuit_breaker_states()
        stats = await AuditService.get_audit_statistics(**_last_day())
        total = stats["total_calculations"]
        high = stats["data_quality_metrics"]["high_confidence"]
        electricity_maps_open = breakers["electricity_maps"]["state"] == "open"
        return {
            "data_source_reliability": {
                "epa_grid": 0.95,
                "electricity_maps": 0.3 if electricity_maps_open else 0.92,
            },
            "system_performance": {
                "average_response_time_ms": stats["average_response_time_ms"],
                "error_rate": stats["error_rate"],
                "p95_response_time_ms": stats["performance_metrics"]["p95"],
            },
            "data_quality": {
                "high_confidence_calculations": high,
                "total_calculations": total,
                "high_confidence_ratio": high / total if total else 0.0,
            },
        }

    @classmethod
    async def get_audit_trail(cls, audit_id: str) -> Dict[str, Any]:
        """Audit record with its methodology, validation and timing.

        Raises ``ValueError`` if the record does not exist.
        """
        record = await AuditService.get_audit_record(audit_id)
        if record is None:
            raise ValueError(f"Audit record {audit_id} not found")
        result = record["calculation_result"] or {}
        return {
            "audit_record": record,
            "methodology": result.get("methodology"),
            "calculation_steps": result.get("steps", []),
            "validation_results": record["validation_results"],
            "performance_metrics": record["performance_metrics"],
        }

    @classmethod
    async def get_service_health(cls) -> Dict[str, Any]:
        external = external_api_service.health_check()
        epa_validation = await asyncio.to_thread(egrid_service.validate_data_integrity)
        try:
            await AuditService.get_service_status()
            stats = await AuditService.get_audit_statistics(**_last_day())
            audit_status = "healthy"
        except sqlite3.Error:
            logger.exception("Audit store unavailable")
            stats = None
            audit_status = "unhealthy"

        services = {
            "calculation_engine": "healthy",
            "validation": "healthy",
            "audit": audit_status,
            "epa_grid": "healthy" if epa_validation["is_valid"] else "degraded",
            "external_apis": external["status"],
        }
        healthy = sum(1 for status in services.values() if status == "healthy")
        if healthy == len(services):
            overall = "healthy"
        elif healthy >= len(services) * 0.7:
            overall = "degraded"
        else:
            overall = "unhealthy"

        error_rate = stats["error_rate"] if stats else 1.0
        return {
            "overall": overall,
            "services": services,
            "performance": {
                "average_response_time_ms": stats["average_response_time_ms"] if stats else 0.0,
                "success_rate": 1 - error_rate,
                "error_rate": error_rate,
            },
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }

    @classmethod
    def get_service_info(cls) -> Dict[str, Any]:
        return {
            "name": SERVICE_NAME,
            "version": ENGINE_VERSION,
            "api_version": settings.api_version,
            "performance_target_ms": settings.performance_target_ms,
            "features": list(FEATURES),
        }
