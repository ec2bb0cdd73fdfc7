"""
Pydantic models for carbon calculation.

``ActivityData`` is the calculation input.  The remaining models
describe what the engine, validation and audit services return: the
result with its methodology and data sources, validation findings,
cross references against reference calculators and timing metrics.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

ActivityType = Literal[
    "cloud_compute",
    "data_transfer",
    "storage",
    "electricity",
    "transport",
    "commit",
    "deployment",
]
ConfidenceLevel = Literal["low", "medium", "high", "very_high"]
Freshness = Literal["real_time", "hourly", "daily", "weekly", "monthly", "quarterly", "annually"]
SourceType = Literal[
    "EPA_eGRID",
    "AWS_Carbon",
    "Electricity_Maps",
    "Green_Software_Foundation",
    "IPCC",
    "Custom",
]


class Coordinates(BaseModel):
    latitude: float
    longitude: float


class Location(BaseModel):
    postal_code: Optional[str] = Field(None, examples=["94105"])
    region: Optional[str] = Field(None, examples=["CA"])
    country: str = Field("US", examples=["US"])
    coordinates: Optional[Coordinates] = None


class ActivityData(BaseModel):
    """Input of a carbon calculation.

    ``metadata`` depends on the activity type, for example
    ``{"instance_type": "large", "duration": 3600}`` for cloud compute or
    ``{"kwh_consumed": 12.5, "time_of_day": "peak"}`` for electricity.
    """

    activity_type: ActivityType = Field(..., examples=["electricity"])
    timestamp: str = Field(..., examples=["2025-01-15T10:30:00Z"])
    location: Optional[Location] = None
    metadata: Optional[Dict[str, Any]] = Field(None, examples=[{"kwh_consumed": 12.5}])


class EmissionFactor(BaseModel):
    id: str
    name: str
    value: float
    unit: str
    source: str
    region: Optional[str] = None
    last_updated: str
    valid_from: str
    valid_until: Optional[str] = None
    uncertainty: Optional[float] = None


class ConversionFactor(BaseModel):
    from_unit: str
    to_unit: str
    factor: float
    source: str
    uncertainty: Optional[float] = None


class CalculationMethodology(BaseModel):
    name: str
    version: str
    emission_factors: List[EmissionFactor] = []
    conversion_factors: List[ConversionFactor] = []
    assumptions: List[str] = []
    standards: List[str] = []


class DataSourceCoverage(BaseModel):
    geographic: List[str] = []
    temporal: str = "Current"
    activities: List[str] = []


class DataSource(BaseModel):
    name: str
    type: SourceType
    last_updated: str
    freshness: Freshness
    reliability: float
    coverage: DataSourceCoverage = Field(default_factory=DataSourceCoverage)


class CalculationStep(BaseModel):
    name: str
    description: str
    value: float
    unit: str = "kg_CO2"
    confidence: float
    sources: List[str] = []


class UncertaintyRange(BaseModel):
    lower: float
    upper: float


class AuditEntry(BaseModel):
    timestamp: str
    action: Literal["calculate", "validate", "update_sources", "override"]
    details: Dict[str, Any] = {}
    system_info: Dict[str, Any] = {}


class CarbonCalculationResult(BaseModel):
    carbon_kg: float
    confidence: ConfidenceLevel
    methodology: CalculationMethodology
    sources: List[DataSource] = []
    steps: List[CalculationStep] = []
    uncertainty_range: UncertaintyRange
    calculated_at: str
    valid_until: str
    audit_trail: List[AuditEntry] = []

    @property
    def request_id(self) -> Optional[str]:
        for entry in self.audit_trail:
            request_id = entry.system_info.get("request_id")
            if request_id:
                return request_id
        return None


class ValidationError(BaseModel):
    field: str
    code: str
    message: str
    severity: Literal["critical", "high", "medium", "low"]


class ValidationWarning(BaseModel):
    field: str
    code: str
    message: str
    impact: Literal["data_quality", "accuracy", "completeness"]


class CrossReference(BaseModel):
    source: str
    expected_value: float
    actual_value: float
    variance: float
    status: Literal["match", "close", "divergent", "failed"]


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[ValidationError] = []
    warnings: List[ValidationWarning] = []
    confidence: float
    cross_references: List[CrossReference] = []


class PerformanceMetrics(BaseModel):
    calculation_time_ms: float
    data_fetch_time_ms: float
    validation_time_ms: float
    total_time_ms: float
    cache_hits: int = 0
    cache_misses: int = 0


class EPAGridData(BaseModel):
    subregion: str
    name: Optional[str] = None
    state: str
    postal_codes: List[str] = []
    emission_rate: float
    unit: str = "kg_CO2_per_MWh"
    year: int
    quarter: int = 4
    last_updated: str
    source: str


class ElectricityMapsData(BaseModel):
    zone: str
    carbon_intensity: float
    unit: str = "gCO2eq/kWh"
    timestamp: str
    source: Literal["real_time", "forecast", "historical"] = "real_time"
    renewable: float = 0.0
    fossil: float = 0.0


class CalculationResponse(BaseModel):
    """Outcome of ``CarbonService.calculate_carbon``."""

    calculation: CarbonCalculationResult
    validation: ValidationResult
    input_validation: Optional[ValidationResult] = None
    audit_id: str
    performance: PerformanceMetrics


class MethodologyVersionCreate(BaseModel):
    changes: List[str] = Field(..., examples=[["Updated eGRID factors to 2023 release"]])
    created_by: str = Field("system", examples=["analyst@ecotrace.dev"])
    assumptions: Optional[List[str]] = None
    standards: Optional[List[str]] = None


class ValidationConfigUpdate(BaseModel):
    max_variance_percent: Optional[float] = Field(None, gt=0)
    min_confidence_threshold: Optional[float] = Field(None, ge=0, le=1)
    conflict_resolution_strategy: Optional[
        Literal["weighted_average", "highest_confidence", "newest_data", "manual_override"]
    ] = None
    outlier_threshold: Optional[float] = Field(None, gt=0)


class MethodologyDeprecate(BaseModel):
    superseded_by: Optional[str] = Field(None, examples=["1.0.1"])
