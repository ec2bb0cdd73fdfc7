"""
Validation of calculation inputs and results.

``validate_activity_data`` checks an ``ActivityData`` record before it
reaches the engine: required fields, timestamp format and plausible
metadata ranges.  ``validate_calculation_result`` checks what the engine
produced.  Besides structural checks this compares the estimate with
reference calculators (cross references), flags statistical outliers
and reconciles the estimate with grid-based estimates from EPA eGRID and
Electricity Maps.

Both methods return a ``ValidationResult`` whose ``confidence`` score is
derived from the findings; neither raises.
"""

import asyncio
import logging
import math
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ecotrace_api.app.core.timeutils import parse_timestamp
from ecotrace_api.app.schemas.calculation import (
    ActivityData,
    CarbonCalculationResult,
    CrossReference,
    DataSource,
    ValidationError,
    ValidationResult,
    ValidationWarning,
)
from ecotrace_api.app.services.egrid_service import egrid_service
from ecotrace_api.app.services.external_api_service import external_api_service

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    "max_variance_percent": 25.0,
    "min_confidence_threshold": 0.6,
    "conflict_resolution_strategy": "weighted_average",
    "outlier_threshold": 2.0,
}

SOURCE_WEIGHTS = {"EPA_eGRID": 0.7, "Electricity_Maps": 0.3, "current_calculation": 0.3}

# calculator -> bias relative to a plain energy x grid estimate
REFERENCE_CALCULATORS = {
    "carbonfund_org": 0.90,
    "carbonfootprint_com": 1.10,
    "epa_calculator": 1.02,
    "climatiq": 0.95,
}
CLOUD_REFERENCE_CALCULATORS = {"cloud_carbon_footprint": 1.15}
REFERENCE_GRID_KG_PER_KWH = 0.4

ERROR_PENALTY = {"critical": 0.5, "high": 0.2, "medium": 0.1, "low": 0.05}
RESULT_ERROR_PENALTY = {"critical": 0.4, "high": 0.2, "medium": 0.1, "low": 0.05}
WARNING_PENALTY = {"accuracy": 0.1, "completeness": 0.05, "data_quality": 0.03}
CONFIDENCE_SCORES = {"very_high": 0.95, "high": 0.85, "medium": 0.7, "low": 0.5}

MAX_AGE_HOURS = {
    "real_time": 1,
    "hourly": 6,
    "daily": 48,
    "weekly": 168,
    "monthly": 720,
    "quarterly": 2160,
}
DEFAULT_MAX_AGE_HOURS = 8760

MAX_REASONABLE_EMISSION_KG = {
    "cloud_compute": 10.0,
    "data_transfer": 1.0,
    "storage": 0.1,
    "electricity": 100.0,
    "transport": 50.0,
    "commit": 0.001,
    "deployment": 0.1,
}

# activity type -> [(metadata key, min, max)]
METADATA_RANGES = {
    "cloud_compute": [("duration", 0, 86400), ("vcpu_count", 0, 1000)],
    "data_transfer": [("bytes_transferred", 0, 1024 ** 4)],
    "storage": [("size_gb", 0, 1e6), ("duration", 0, 365 * 24 * 3600)],
    "electricity": [("kwh_consumed", 0, 1e6)],
}

OLD_ACTIVITY_DAYS = 30


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _mean_std(values: List[float]):
    mean = sum(values) / len(values)
    std = math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))
    return mean, std


def variance_status(variance: float) -> str:
    if variance < 0.05:
        return "match"
    if variance < 0.15:
        return "close"
    if variance < 0.30:
        return "divergent"
    return "failed"


def estimate_energy_consumption(activity: ActivityData) -> float:
    """Rough energy use in kWh, used for reference estimates."""
    metadata = activity.metadata or {}
    try:
        if activity.activity_type == "cloud_compute":
            vcpus = float(metadata.get("vcpu_count") or 1)
            duration = float(metadata.get("duration") or 3600)
            return vcpus * duration * 0.1 / 3600
        if activity.activity_type == "data_transfer":
            return float(metadata.get("bytes_transferred") or 0) * 6e-9
        if activity.activity_type == "storage":
            return float(metadata.get("size_gb") or 0) * 0.0065
        if activity.activity_type == "electricity":
            return float(metadata.get("kwh_consumed") or 0)
    except (TypeError, ValueError):
        pass
    return 0.001


def zone_for(activity: ActivityData) -> Optional[str]:
    location = activity.location
    if location is None:
        return None
    if location.country == "US" and location.region:
        return f"US-{location.region}"
    return location.country


class ValidationService:
    """Input and result validation with a mutable configuration."""

    def __init__(self, egrid=None, external_apis=None) -> None:
        self.egrid = egrid or egrid_service
        self.external_apis = external_apis or external_api_service
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._config = dict(DEFAULT_CONFIG)

    def get_validation_config(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._config)

    def update_validation_config(self, **changes: Any) -> Dict[str, Any]:
        """Update configuration keys; ``None`` values are ignored.

        Raises
        ------
        ValueError
            If a key is not a known configuration option.
        """
        unknown = [key for key in changes if key not in DEFAULT_CONFIG]
        if unknown:
            raise ValueError(f"Unknown validation option(s): {', '.join(sorted(unknown))}")
        with self._lock:
            self._config.update({k: v for k, v in changes.items() if v is not None})
            config = dict(self._config)
        logger.info("Validation config updated", extra={"context": {"config": config}})
        return config

    # Input validation ---------------------------------------------------

    async def validate_activity_data(self, activity: ActivityData) -> ValidationResult:
        try:
            errors = self._validate_structure(activity)
            errors.extend(self._validate_ranges(activity))
            warnings = self._activity_warnings(activity)
            confidence = self._data_confidence(activity, errors, warnings)
            config = self.get_validation_config()
            result = ValidationResult(
                is_valid=not errors and confidence >= config["min_confidence_threshold"],
                errors=errors,
                warnings=warnings,
                confidence=confidence,
            )
        except Exception as exc:
            logger.exception("Activity data validation failed")
            return ValidationResult(
                is_valid=False,
                errors=[
                    ValidationError(
                        field="validation_system",
                        code="VALIDATION_SYSTEM_ERROR",
                        message=f"Validation system error: {exc}",
                        severity="critical",
                    )
                ],
                confidence=0.0,
            )
        logger.debug(
            "Activity data validated: valid=%s errors=%d warnings=%d",
            result.is_valid,
            len(result.errors),
            len(result.warnings),
        )
        return result

    def _validate_structure(self, activity: ActivityData) -> List[ValidationError]:
        errors: List[ValidationError] = []
        for name in ("activity_type", "timestamp"):
            if not getattr(activity, name, None):
                errors.append(
                    ValidationError(
                        field=name,
                        code="MISSING_REQUIRED_FIELD",
                        message=f"Required field '{name}' is missing",
                        severity="critical",
                    )
                )
        if activity.timestamp:
            try:
                parse_timestamp(activity.timestamp)
            except ValueError:
                errors.append(
                    ValidationError(
                        field="timestamp",
                        code="INVALID_TIMESTAMP_FORMAT",
                        message=f"Timestamp '{activity.timestamp}' is not a valid ISO 8601 date",
                        severity="critical",
                    )
                )
        if not activity.metadata:
            errors.append(
                ValidationError(
                    field="metadata",
                    code="MISSING_METADATA",
                    message="Activity metadata is required",
                    severity="critical",
                )
            )
        return errors

    def _validate_ranges(self, activity: ActivityData) -> List[ValidationError]:
        errors: List[ValidationError] = []
        metadata = activity.metadata or {}
        for key, low, high in METADATA_RANGES.get(activity.activity_type, []):
            if metadata.get(key) is None:
                continue
            field = f"metadata.{key}"
            try:
                value = float(metadata[key])
            except (TypeError, ValueError):
                errors.append(
                    ValidationError(
                        field=field,
                        code="INVALID_RANGE",
                        message=f"{field} must be a number",
                        severity="high",
                    )
                )
                continue
            if not low <= value <= high:
                errors.append(
                    ValidationError(
                        field=field,
                        code="INVALID_RANGE",
                        message=f"{field} value {value:g} is outside valid range [{low:g}, {high:g}]",
                        severity="high",
                    )
                )
        return errors

    def _activity_warnings(self, activity: ActivityData) -> List[ValidationWarning]:
        warnings: List[ValidationWarning] = []
        try:
            age = datetime.now(timezone.utc) - parse_timestamp(activity.timestamp)
        except ValueError:
            age = None
        if age is not None and age.days > OLD_ACTIVITY_DAYS:
            warnings.append(
                ValidationWarning(
                    field="timestamp",
                    code="OLD_ACTIVITY_DATA",
                    message=f"Activity is {age.days} days old; emission factors may have changed",
                    impact="data_quality",
                )
            )
        location = activity.location
        if location is None or not (location.postal_code or location.region or location.coordinates):
            warnings.append(
                ValidationWarning(
                    field="location",
                    code="MISSING_LOCATION",
                    message="No location given; a default grid factor will be used",
                    impact="accuracy",
                )
            )
        return warnings

    @staticmethod
    def _data_confidence(
        activity: ActivityData, errors: List[ValidationError], warnings: List[ValidationWarning]
    ) -> float:
        confidence = 1.0
        confidence -= sum(ERROR_PENALTY[e.severity] for e in errors)
        confidence -= sum(WARNING_PENALTY[w.impact] for w in warnings)
        if activity.location is not None:
            if activity.location.postal_code:
                confidence += 0.1
            if activity.location.coordinates is not None:
                confidence += 0.05
        return round(_clamp(confidence), 4)

    # Result validation --------------------------------------------------

    async def validate_calculation_result(
        self, result: CarbonCalculationResult, activity: ActivityData
    ) -> ValidationResult:
        try:
            config = self.get_validation_config()
            errors = self._result_structure(result)
            errors.extend(self._result_ranges(result, activity.activity_type))
            cross_references = self.cross_reference(activity, result)
            errors.extend(self._detect_outliers(result, cross_references, config))

            warnings = self._methodology_warnings(result)
            warnings.extend(self._freshness_warnings(result.sources))
            resolution = await self.resolve_conflicts(activity, result, config)
            if resolution["has_conflicts"]:
                warnings.append(
                    ValidationWarning(
                        field="data_sources",
                        code="SOURCE_CONFLICTS_DETECTED",
                        message=(
                            f"Conflicting estimates from {', '.join(resolution['conflicting_sources'])}; "
                            f"resolved to {resolution['resolved_value']:.6f} kg via {resolution['resolution_method']}"
                        ),
                        impact="accuracy",
                    )
                )

            confidence = self._result_confidence(errors, warnings, cross_references)
            if resolution["has_conflicts"]:
                confidence -= resolution["confidence_reduction"]
            confidence = round(_clamp(confidence), 4)
            validation = ValidationResult(
                is_valid=not errors and confidence >= config["min_confidence_threshold"],
                errors=errors,
                warnings=warnings,
                confidence=confidence,
                cross_references=cross_references,
            )
        except Exception as exc:
            logger.exception("Calculation result validation failed")
            return ValidationResult(
                is_valid=False,
                errors=[
                    ValidationError(
                        field="result_validation",
                        code="RESULT_VALIDATION_ERROR",
                        message=f"Result validation error: {exc}",
                        severity="critical",
                    )
                ],
                confidence=0.0,
            )
        logger.info(
            "Calculation result validated: carbon_kg=%s valid=%s confidence=%.2f",
            result.carbon_kg,
            validation.is_valid,
            validation.confidence,
            extra={"context": {"conflicts": resolution["has_conflicts"], "errors": len(errors)}},
        )
        return validation

    @staticmethod
    def _result_structure(result: CarbonCalculationResult) -> List[ValidationError]:
        errors: List[ValidationError] = []
        if result.carbon_kg is None:
            errors.append(
                ValidationError(
                    field="carbon_kg",
                    code="MISSING_CARBON_VALUE",
                    message="Carbon emission value is missing",
                    severity="critical",
                )
            )
        elif result.carbon_kg < 0:
            errors.append(
                ValidationError(
                    field="carbon_kg",
                    code="NEGATIVE_CARBON_VALUE",
                    message="Carbon emission cannot be negative",
                    severity="critical",
                )
            )
        if not result.confidence:
            errors.append(
                ValidationError(
                    field="confidence",
                    code="MISSING_CONFIDENCE",
                    message="Confidence level is missing",
                    severity="high",
                )
            )
        if result.methodology is None:
            errors.append(
                ValidationError(
                    field="methodology",
                    code="MISSING_METHODOLOGY",
                    message="Calculation methodology is missing",
                    severity="high",
                )
            )
        return errors

    @staticmethod
    def _result_ranges(result: CarbonCalculationResult, activity_type: str) -> List[ValidationError]:
        maximum = MAX_REASONABLE_EMISSION_KG.get(activity_type, 1.0)
        checks = [("carbon_kg", result.carbon_kg)]
        if result.uncertainty_range is not None:
            checks.append(("uncertainty_range.upper", result.uncertainty_range.upper))
        return [
            ValidationError(
                field=field,
                code="RANGE_VALIDATION_FAILED",
                message=f"{field} value {value} is outside valid range [0, {maximum}]",
                severity="high",
            )
            for field, value in checks
            if value is not None and not 0 <= value <= maximum
        ]

    @staticmethod
    def _methodology_warnings(result: CarbonCalculationResult) -> List[ValidationWarning]:
        if result.methodology is None:
            return []
        warnings: List[ValidationWarning] = []
        if not result.methodology.standards:
            warnings.append(
                ValidationWarning(
                    field="methodology.standards",
                    code="NO_STANDARDS_SPECIFIED",
                    message="No recognized standards specified in methodology",
                    impact="data_quality",
                )
            )
        if not result.methodology.emission_factors:
            warnings.append(
                ValidationWarning(
                    field="methodology.emission_factors",
                    code="NO_EMISSION_FACTORS",
                    message="No emission factors specified in methodology",
                    impact="completeness",
                )
            )
        return warnings

    @staticmethod
    def _freshness_warnings(sources: List[DataSource]) -> List[ValidationWarning]:
        warnings: List[ValidationWarning] = []
        now = datetime.now(timezone.utc)
        for source in sources:
            try:
                age_hours = (now - parse_timestamp(source.last_updated)).total_seconds() / 3600
            except ValueError:
                age_hours = math.inf
            if age_hours > MAX_AGE_HOURS.get(source.freshness, DEFAULT_MAX_AGE_HOURS):
                age_text = "unknown age" if math.isinf(age_hours) else f"{round(age_hours)} hours old"
                warnings.append(
                    ValidationWarning(
                        field="data_sources",
                        code="STALE_DATA_SOURCE",
                        message=f"Data source '{source.name}' is stale ({age_text})",
                        impact="accuracy",
                    )
                )
        return warnings

    def cross_reference(
        self, activity: ActivityData, result: CarbonCalculationResult
    ) -> List[CrossReference]:
        """Compare ``result`` with reference calculator estimates."""
        calculators = dict(REFERENCE_CALCULATORS)
        if activity.activity_type == "cloud_compute":
            calculators.update(CLOUD_REFERENCE_CALCULATORS)
        baseline = estimate_energy_consumption(activity) * REFERENCE_GRID_KG_PER_KWH
        ours = result.carbon_kg
        references = []
        for name, bias in calculators.items():
            expected = baseline * bias
            if ours:
                variance = abs(ours - expected) / ours
            else:
                variance = 1.0 if expected else 0.0
            references.append(
                CrossReference(
                    source=name,
                    expected_value=round(expected, 6),
                    actual_value=ours,
                    variance=round(variance * 100, 2),
                    status=variance_status(variance),
                )
            )
        return references

    @staticmethod
    def _detect_outliers(
        result: CarbonCalculationResult, references: List[CrossReference], config: Dict[str, Any]
    ) -> List[ValidationError]:
        if len(references) < 3:
            return []
        mean, std = _mean_std([result.carbon_kg] + [ref.expected_value for ref in references])
        z_score = abs(result.carbon_kg - mean) / (std or 1)
        if z_score <= config["outlier_threshold"]:
            return []
        return [
            ValidationError(
                field="carbon_kg",
                code="OUTLIER_DETECTED",
                message=f"Calculated value is a statistical outlier (z-score {z_score:.2f})",
                severity="medium",
            )
        ]

    @staticmethod
    def _result_confidence(
        errors: List[ValidationError],
        warnings: List[ValidationWarning],
        references: List[CrossReference],
    ) -> float:
        confidence = 0.8
        confidence -= sum(RESULT_ERROR_PENALTY[e.severity] for e in errors)
        confidence -= sum(WARNING_PENALTY[w.impact] for w in warnings)
        matching = [ref for ref in references if ref.status in ("match", "close")]
        if matching:
            confidence += 0.1 * len(matching) / len(references)
        return confidence

    # Conflict resolution ------------------------------------------------

    async def _source_estimates(
        self, activity: ActivityData, result: CarbonCalculationResult
    ) -> List[Dict[str, Any]]:
        energy_kwh = estimate_energy_consumption(activity)
        estimates = [
            {
                "source": "current_calculation",
                "value": result.carbon_kg,
                "confidence": CONFIDENCE_SCORES.get(result.confidence, 0.5),
                "weight": SOURCE_WEIGHTS["current_calculation"],
                "timestamp": result.calculated_at,
            }
        ]
        location = activity.location
        if location is not None and location.postal_code:
            grid = await asyncio.to_thread(self.egrid.get_emission_factor, location.postal_code)
            if grid is not None:
                estimates.append(
                    {
                        "source": "EPA_eGRID",
                        "value": grid.emission_rate / 1000 * energy_kwh,
                        "confidence": 0.9,
                        "weight": SOURCE_WEIGHTS["EPA_eGRID"],
                        "timestamp": grid.last_updated,
                    }
                )
        zone = zone_for(activity)
        if zone:
            live = await asyncio.to_thread(self.external_apis.get_electricity_maps_data, zone)
            if live is not None:
                estimates.append(
                    {
                        "source": "Electricity_Maps",
                        "value": live.carbon_intensity / 1000 * energy_kwh,
                        "confidence": 0.85 if live.source == "real_time" else 0.7,
                        "weight": SOURCE_WEIGHTS["Electricity_Maps"],
                        "timestamp": live.timestamp,
                    }
                )
        return estimates

    async def resolve_conflicts(
        self,
        activity: ActivityData,
        result: CarbonCalculationResult,
        config: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Reconcile our estimate with grid-based estimates.

        Returns a dict with ``has_conflicts``, ``conflicting_sources``,
        ``resolved_value``, ``resolution_method``,
        ``confidence_reduction`` and ``discarded_sources``.
        """
        config = config or self.get_validation_config()
        estimates = await self._source_estimates(activity, result)
        if len(estimates) < 2:
            return {
                "has_conflicts": False,
                "conflicting_sources": [],
                "resolved_value": result.carbon_kg,
                "resolution_method": "insufficient_sources",
                "confidence_reduction": 0.1,
                "discarded_sources": [],
            }

        values = [e["value"] for e in estimates]
        mean, std = _mean_std(values)
        outliers = [
            e["source"]
            for e in estimates
            if std and abs(e["value"] - mean) / std > config["outlier_threshold"]
        ]
        low, high = min(values), max(values)
        if low > 0:
            variance = high / low - 1
        else:
            variance = math.inf if high > 0 else 0.0
        if variance <= config["max_variance_percent"] / 100 and not outliers:
            return {
                "has_conflicts": False,
                "conflicting_sources": [],
                "resolved_value": result.carbon_kg,
                "resolution_method": "no_conflict",
                "confidence_reduction": 0.0,
                "discarded_sources": [],
            }

        strategy = config["conflict_resolution_strategy"]
        kept = [e for e in estimates if e["source"] not in outliers] or estimates
        if strategy == "highest_confidence":
            resolved = max(kept, key=lambda e: e["confidence"])["value"]
        elif strategy == "newest_data":
            resolved = max(kept, key=lambda e: self._sort_key(e["timestamp"]))["value"]
        elif strategy == "manual_override":
            resolved = result.carbon_kg
        else:
            total_weight = sum(e["weight"] for e in kept)
            resolved = sum(e["value"] * e["weight"] for e in kept) / total_weight
        reduction = 0.3 if strategy == "manual_override" else 0.1 + 0.05 * len(outliers)
        logger.warning(
            "Data source conflict detected (variance %.1f%%), resolved via %s",
            variance * 100,
            strategy,
        )
        return {
            "has_conflicts": True,
            "conflicting_sources": [e["source"] for e in estimates],
            "resolved_value": resolved,
            "resolution_method": strategy,
            "confidence_reduction": reduction,
            "discarded_sources": outliers,
        }

    @staticmethod
    def _sort_key(timestamp: str) -> datetime:
        try:
            return parse_timestamp(timestamp)
        except (TypeError, ValueError):
            return datetime.min.replace(tzinfo=timezone.utc)


validation_service = ValidationService()
