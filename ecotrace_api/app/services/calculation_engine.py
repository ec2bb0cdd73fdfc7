"""
Carbon calculation engine.

Turns an ``ActivityData`` record into a ``CarbonCalculationResult``.
Each activity type is broken down into one or more calculation steps
(for cloud compute: CPU, memory and network), each with its own
emission value, confidence and provenance.  The result sums the steps,
derives an overall confidence level from the mean step confidence and
attaches uncertainty bounds, methodology and an audit entry.

Electricity-based steps need a grid emission factor in kg CO2e/MWh.  It
is resolved in this order:

1. EPA eGRID, when the location carries a US postal code;
2. Electricity Maps, for the location's zone (``US-CA``, ``DE``, ...);
3. ``DEFAULT_GRID_FACTOR``.

All step emissions are multiplied by ``CONSERVATIVE_BIAS`` so that
estimates err on the high side.  ``calculate_carbon`` never raises: a
failure is logged and a deliberately wide fallback result is returned.
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from ecotrace_api.app.core.config import settings
from ecotrace_api.app.schemas.calculation import (
    ActivityData,
    AuditEntry,
    CalculationMethodology,
    CalculationStep,
    CarbonCalculationResult,
    ConversionFactor,
    DataSource,
    DataSourceCoverage,
    EmissionFactor,
    UncertaintyRange,
)
from ecotrace_api.app.services.egrid_service import egrid_service
from ecotrace_api.app.services.external_api_service import external_api_service

logger = logging.getLogger(__name__)

ENGINE_VERSION = "1.0.0"
METHODOLOGY_NAME = "EcoTrace Scientific Carbon Calculation"
FALLBACK_METHODOLOGY_NAME = "EcoTrace Fallback Calculation"
STANDARDS = ["IPCC_AR6", "GHG_Protocol", "SCI_Spec"]
ASSUMPTIONS = [
    "Conservative estimation bias applied (+15%)",
    "Temporal variations accounted for",
    "Geographic sensitivity included",
    "Uncertainty quantification provided",
]

CONSERVATIVE_BIAS = 1.15
MIN_CONFIDENCE_THRESHOLD = 0.6
DEFAULT_GRID_FACTOR = 415.755  # kg CO2e / MWh
KWH_TO_MWH = 0.001
LB_TO_KG = 0.453592

FALLBACK_EMISSION_KG = 0.001

# Instance size -> CPU watts, memory GB
CPU_POWER_W = {"small": 35, "medium": 75, "large": 150, "xlarge": 300, "2xlarge": 600, "4xlarge": 1200}
INSTANCE_MEMORY_GB = {"small": 2, "medium": 4, "large": 8, "xlarge": 16, "2xlarge": 32, "4xlarge": 64}
CPU_UTILIZATION = 0.12
MEMORY_W_PER_GB = 0.38
NETWORK_GB_PER_HOUR = 0.1
NETWORK_KWH_PER_GB = 0.006

# network type -> (kWh per GB, confidence)
TRANSFER_FACTORS = {"internet": (0.006, 0.75), "cdn": (0.004, 0.80), "internal": (0.001, 0.85)}
TRANSFER_DEFAULT = (0.006, 0.70)

# storage type -> (kWh per GB-hour, confidence)
STORAGE_FACTORS = {
    "ssd": (0.000065, 0.85),
    "hdd": (0.000040, 0.85),
    "object": (0.000012, 0.80),
    "archive": (0.000004, 0.75),
}
STORAGE_DEFAULT = (0.000065, 0.70)

# kg CO2e per passenger-km
TRANSPORT_FACTORS = {"car": 0.171, "bus": 0.105, "train": 0.041, "flight": 0.255}

COMMIT_BASE_KG = 0.0001
COMMIT_SPAN_KG = 0.0005
COMMIT_FULL_SCALE_LINES = 1000
DEPLOYMENT_BASE_KG = 0.005
DEPLOYMENT_SPAN_KG = 0.020
DEPLOYMENT_FULL_SCALE_SECONDS = 1800


def _now() -> datetime:
    return datetime.now(timezone.utc)


def generate_request_id() -> str:
    return f"calc_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


def confidence_level(score: float) -> str:
    if score >= 0.9:
        return "very_high"
    if score >= 0.8:
        return "high"
    if score >= 0.7:
        return "medium"
    return "low"


def instance_size(instance_type: Optional[str]) -> str:
    """Size class of an instance type: ``"m5.2xlarge"`` -> ``"2xlarge"``."""
    if not instance_type:
        return "medium"
    size = instance_type.rsplit(".", 1)[-1].lower()
    return size if size in CPU_POWER_W else "medium"


def _number(metadata: Dict[str, Any], key: str, default: Optional[float] = None) -> float:
    value = metadata.get(key, default)
    if value is None:
        raise ValueError(f"metadata.{key} is required")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"metadata.{key} must be a number") from None


@dataclass
class CalculationContext:
    activity: ActivityData
    request_id: str
    timestamp: str
    emission_factors: List[EmissionFactor] = field(default_factory=list)
    grid_factor: Optional[float] = None
    grid_source: Optional[str] = None

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.activity.metadata or {}


class CarbonCalculationEngine:
    """Scientific carbon estimate for a single activity."""

    def __init__(self, egrid=None, external_apis=None) -> None:
        self.egrid = egrid or egrid_service
        self.external_apis = external_apis or external_api_service
        self._calculators = {
            "cloud_compute": self._calculate_cloud_compute,
            "data_transfer": self._calculate_data_transfer,
            "storage": self._calculate_storage,
            "electricity": self._calculate_electricity,
            "transport": self._calculate_transport,
            "commit": self._calculate_commit,
            "deployment": self._calculate_deployment,
        }

    async def calculate_carbon(
        self, activity: ActivityData, request_id: Optional[str] = None
    ) -> CarbonCalculationResult:
        """Calculate the footprint of ``activity``.

        Never raises; errors produce ``create_fallback_result``.
        """
        started = time.perf_counter()
        request_id = request_id or generate_request_id()
        logger.info(
            "Carbon calculation started for %s (%s)",
            activity.activity_type,
            request_id,
            extra={"context": {"request_id": request_id, "activity_type": activity.activity_type}},
        )
        try:
            context = CalculationContext(
                activity=activity, request_id=request_id, timestamp=_now().isoformat()
            )
            await self._resolve_emission_factors(context)
            calculator = self._calculators.get(activity.activity_type)
            if calculator is None:
                raise ValueError(f"Unsupported activity type: {activity.activity_type}")
            steps = await calculator(context)
            result = self._build_result(steps, context, started)
        except Exception as exc:
            logger.exception("Carbon calculation failed (%s)", request_id)
            return self.create_fallback_result(activity, exc, request_id)

        elapsed_ms = (time.perf_counter() - started) * 1000
        if elapsed_ms > settings.performance_target_ms:
            logger.warning(
                "Calculation %s took %.1fms (target %.0fms)",
                request_id,
                elapsed_ms,
                settings.performance_target_ms,
            )
        else:
            logger.debug("Calculation %s took %.1fms", request_id, elapsed_ms)
        return result

    # Emission factors ---------------------------------------------------

    async def _resolve_emission_factors(self, context: CalculationContext) -> None:
        location = context.activity.location
        if location and location.postal_code and len(location.postal_code.strip()) >= 5:
            data = await asyncio.to_thread(self.egrid.get_emission_factor, location.postal_code)
            if data is not None:
                context.grid_factor = data.emission_rate
                context.grid_source = data.source
                context.emission_factors.append(
                    EmissionFactor(
                        id=f"epa_{data.subregion}",
                        name="EPA eGRID Emission Factor",
                        value=data.emission_rate,
                        unit=data.unit,
                        source=data.source,
                        region=data.subregion,
                        last_updated=data.last_updated,
                        valid_from=data.last_updated,
                        uncertainty=0.05,
                    )
                )

    async def get_grid_factor(self, context: CalculationContext) -> float:
        """Grid factor in kg CO2e/MWh for the activity's location."""
        if context.grid_factor is not None:
            return context.grid_factor
        zone = self._zone_for(context)
        if zone:
            data = await asyncio.to_thread(self.external_apis.get_electricity_maps_data, zone)
            if data is not None:
                context.grid_factor = data.carbon_intensity
                context.grid_source = "Electricity Maps"
                context.emission_factors.append(
                    EmissionFactor(
                        id=f"electricity_maps_{zone}",
                        name="Electricity Maps Carbon Intensity",
                        value=data.carbon_intensity,
                        unit="kg_CO2_per_MWh",
                        source="Electricity Maps",
                        region=zone,
                        last_updated=data.timestamp,
                        valid_from=data.timestamp,
                        uncertainty=0.1,
                    )
                )
                return context.grid_factor
        context.grid_factor = DEFAULT_GRID_FACTOR
        context.grid_source = "EcoTrace default grid factor"
        context.emission_factors.append(
            EmissionFactor(
                id="default_grid",
                name="Default Grid Emission Factor",
                value=DEFAULT_GRID_FACTOR,
                unit="kg_CO2_per_MWh",
                source="EcoTrace default",
                last_updated=context.timestamp,
                valid_from=context.timestamp,
                uncertainty=0.2,
            )
        )
        return context.grid_factor

    @staticmethod
    def _zone_for(context: CalculationContext) -> Optional[str]:
        location = context.activity.location
        if location is not None:
            if location.country == "US" and location.region:
                return f"US-{location.region}"
            return location.country
        return context.metadata.get("region")

    def _conversion_factors(self) -> List[ConversionFactor]:
        return [
            ConversionFactor(from_unit="kWh", to_unit="MWh", factor=KWH_TO_MWH, source="Standard conversion", uncertainty=0.0),
            ConversionFactor(
                from_unit="lb_CO2_per_MWh",
                to_unit="kg_CO2_per_MWh",
                factor=LB_TO_KG,
                source="Standard conversion",
                uncertainty=0.0,
            ),
        ]

    # Activity calculators ----------------------------------------------

    async def _grid_emission(self, kwh: float, context: CalculationContext) -> float:
        grid = await self.get_grid_factor(context)
        return kwh * KWH_TO_MWH * grid * CONSERVATIVE_BIAS

    async def _calculate_cloud_compute(self, context: CalculationContext) -> List[CalculationStep]:
        metadata = context.metadata
        hours = _number(metadata, "duration", 3600) / 3600
        size = instance_size(metadata.get("instance_type"))
        grid_sources = ["Regional grid factors"]

        cpu_kwh = CPU_POWER_W[size] * CPU_UTILIZATION * hours / 1000
        memory_gb_hours = metadata.get("memory_gb_hours")
        if memory_gb_hours is not None:
            memory_kwh = _number(metadata, "memory_gb_hours") * MEMORY_W_PER_GB / 1000
        else:
            memory_kwh = INSTANCE_MEMORY_GB[size] * MEMORY_W_PER_GB * hours / 1000
        network_kwh = NETWORK_GB_PER_HOUR * hours * NETWORK_KWH_PER_GB

        return [
            CalculationStep(
                name="cpu_emission",
                description=f"CPU compute carbon emission ({size})",
                value=await self._grid_emission(cpu_kwh, context),
                confidence=0.85,
                sources=["Instance power consumption models", *grid_sources],
            ),
            CalculationStep(
                name="memory_emission",
                description="Memory usage carbon emission",
                value=await self._grid_emission(memory_kwh, context),
                confidence=0.80,
                sources=["Memory power consumption models", *grid_sources],
            ),
            CalculationStep(
                name="network_emission",
                description="Network usage carbon emission",
                value=await self._grid_emission(network_kwh, context),
                confidence=0.70,
                sources=["Network infrastructure power models"],
            ),
        ]

    async def _calculate_data_transfer(self, context: CalculationContext) -> List[CalculationStep]:
        metadata = context.metadata
        gigabytes = _number(metadata, "bytes_transferred") / (1024 ** 3)
        kwh_per_gb, confidence = TRANSFER_FACTORS.get(metadata.get("network_type"), TRANSFER_DEFAULT)
        return [
            CalculationStep(
                name="data_transfer_emission",
                description="Data transfer carbon emission",
                value=gigabytes * kwh_per_gb * CONSERVATIVE_BIAS,
                confidence=confidence,
                sources=["Network infrastructure carbon factors"],
            )
        ]

    async def _calculate_storage(self, context: CalculationContext) -> List[CalculationStep]:
        metadata = context.metadata
        rate, confidence = STORAGE_FACTORS.get(metadata.get("storage_type"), STORAGE_DEFAULT)
        hours = _number(metadata, "duration", 3600) / 3600
        size_gb = _number(metadata, "size_gb")
        return [
            CalculationStep(
                name="storage_emission",
                description="Storage carbon emission",
                value=size_gb * rate * hours * CONSERVATIVE_BIAS,
                confidence=confidence,
                sources=["Storage device power consumption models"],
            )
        ]

    async def _calculate_electricity(self, context: CalculationContext) -> List[CalculationStep]:
        metadata = context.metadata
        kwh = _number(metadata, "kwh_consumed")
        factor = await self.get_grid_factor(context)
        time_of_day = metadata.get("time_of_day")
        if time_of_day == "peak":
            factor *= 1.2
        elif time_of_day == "off_peak":
            factor *= 0.8
        source = metadata.get("source")
        if source == "renewable":
            factor *= 0.05
        elif source == "mixed":
            factor *= 0.7
        return [
            CalculationStep(
                name="electricity_emission",
                description="Electricity consumption carbon emission",
                value=kwh * factor / 1000 * CONSERVATIVE_BIAS,
                confidence=0.90,
                sources=["EPA eGRID", "Electricity Maps"],
            )
        ]

    async def _calculate_transport(self, context: CalculationContext) -> List[CalculationStep]:
        metadata = context.metadata
        if metadata.get("distance_km") is not None:
            distance = _number(metadata, "distance_km")
            mode = metadata.get("mode", "car")
            return [
                CalculationStep(
                    name="transport_emission",
                    description=f"Transport carbon emission ({mode}, {distance:g} km)",
                    value=distance * TRANSPORT_FACTORS.get(mode, TRANSPORT_FACTORS["car"]) * CONSERVATIVE_BIAS,
                    confidence=0.70,
                    sources=["Transport emission factors"],
                )
            ]
        return [
            CalculationStep(
                name="transport_emission",
                description="Transport carbon emission (estimated)",
                value=0.001 * CONSERVATIVE_BIAS,
                confidence=0.50,
                sources=["Transport emission factors"],
            )
        ]

    async def _calculate_commit(self, context: CalculationContext) -> List[CalculationStep]:
        metadata = context.metadata
        lines = float(metadata.get("additions", 0) or 0) + float(metadata.get("deletions", 0) or 0)
        complexity = min(1.0, lines / COMMIT_FULL_SCALE_LINES)
        return [
            CalculationStep(
                name="commit_emission",
                description="Git commit processing emission",
                value=(COMMIT_BASE_KG + COMMIT_SPAN_KG * complexity) * CONSERVATIVE_BIAS,
                confidence=0.70,
                sources=["Code processing energy models"],
            )
        ]

    async def _calculate_deployment(self, context: CalculationContext) -> List[CalculationStep]:
        duration = float(context.metadata.get("duration", 0) or 0)
        complexity = min(1.0, duration / DEPLOYMENT_FULL_SCALE_SECONDS)
        return [
            CalculationStep(
                name="deployment_emission",
                description="Deployment process emission",
                value=(DEPLOYMENT_BASE_KG + DEPLOYMENT_SPAN_KG * complexity) * CONSERVATIVE_BIAS,
                confidence=0.75,
                sources=["CI/CD pipeline energy models"],
            )
        ]

    # Result assembly ----------------------------------------------------

    def _audit_entry(self, request_id: str, timestamp: str, **details: Any) -> AuditEntry:
        return AuditEntry(
            timestamp=timestamp,
            action="calculate",
            details={"request_id": request_id, "version": ENGINE_VERSION, **details},
            system_info={
                "version": ENGINE_VERSION,
                "environment": settings.environment,
                "request_id": request_id,
            },
        )

    def _build_result(
        self, steps: List[CalculationStep], context: CalculationContext, started: float
    ) -> CarbonCalculationResult:
        total = sum(step.value for step in steps)
        avg_confidence = sum(step.confidence for step in steps) / len(steps)
        activity_type = context.activity.activity_type

        seen: List[str] = []
        for step in steps:
            for source in step.sources:
                if source not in seen:
                    seen.append(source)
        sources = [
            DataSource(
                name=name,
                type="Custom",
                last_updated=context.timestamp,
                freshness="real_time",
                reliability=0.85,
                coverage=DataSourceCoverage(geographic=["Global"], temporal="Current", activities=[activity_type]),
            )
            for name in seen
        ]

        methodology = CalculationMethodology(
            name=METHODOLOGY_NAME,
            version=ENGINE_VERSION,
            emission_factors=context.emission_factors,
            conversion_factors=self._conversion_factors(),
            assumptions=list(ASSUMPTIONS),
            standards=list(STANDARDS),
        )
        processing_ms = round((time.perf_counter() - started) * 1000, 3)
        return CarbonCalculationResult(
            carbon_kg=round(total, 5),
            confidence=confidence_level(avg_confidence),
            methodology=methodology,
            sources=sources,
            steps=steps,
            uncertainty_range=UncertaintyRange(lower=total * 0.85, upper=total * 1.25),
            calculated_at=context.timestamp,
            valid_until=(_now() + timedelta(hours=24)).isoformat(),
            audit_trail=[
                self._audit_entry(context.request_id, context.timestamp, processing_time_ms=processing_ms)
            ],
        )

    def create_fallback_result(
        self, activity: ActivityData, error: Exception, request_id: Optional[str] = None
    ) -> CarbonCalculationResult:
        """Conservative placeholder used when a calculation fails."""
        request_id = request_id or generate_request_id()
        now = _now()
        return CarbonCalculationResult(
            carbon_kg=FALLBACK_EMISSION_KG,
            confidence="low",
            methodology=CalculationMethodology(
                name=FALLBACK_METHODOLOGY_NAME,
                version=ENGINE_VERSION,
                assumptions=["Fallback estimation used due to calculation error"],
                standards=[],
            ),
            sources=[],
            steps=[],
            uncertainty_range=UncertaintyRange(
                lower=FALLBACK_EMISSION_KG * 0.5, upper=FALLBACK_EMISSION_KG * 3.0
            ),
            calculated_at=now.isoformat(),
            valid_until=(now + timedelta(hours=1)).isoformat(),
            audit_trail=[
                self._audit_entry(
                    request_id,
                    now.isoformat(),
                    reason=f"Calculation failed: {error}",
                    activity_type=activity.activity_type,
                )
            ],
        )


calculation_engine = CarbonCalculationEngine()
