import asyncio
from datetime import timedelta

import pytest

from ecotrace_api.app.core.timeutils import utcnow
from ecotrace_api.app.schemas.calculation import ActivityData, Location
from ecotrace_api.app.services.calculation_engine import calculation_engine
from ecotrace_api.app.services.validation_service import (
    DEFAULT_CONFIG,
    ValidationService,
    estimate_energy_consumption,
    variance_status,
)
from tests.conftest import make_activity


@pytest.fixture
def validator():
    return ValidationService()


def codes(items):
    return [item.code for item in items]


def test_valid_activity_with_location(validator):
    activity = make_activity("electricity", location=Location(postal_code="94105"))

    result = asyncio.run(validator.validate_activity_data(activity))

    assert result.is_valid
    assert result.errors == []
    assert result.confidence == 1.0


def test_missing_location_is_a_warning(validator):
    result = asyncio.run(validator.validate_activity_data(make_activity("electricity")))

    assert result.is_valid
    assert codes(result.warnings) == ["MISSING_LOCATION"]
    assert result.confidence == 0.9


def test_out_of_range_metadata_is_invalid(validator):
    activity = make_activity("electricity", {"kwh_consumed": -5})

    result = asyncio.run(validator.validate_activity_data(activity))

    assert not result.is_valid
    assert codes(result.errors) == ["INVALID_RANGE"]
    assert result.errors[0].severity == "high"


def test_bad_timestamp_and_missing_metadata_are_critical(validator):
    activity = ActivityData(activity_type="electricity", timestamp="yesterday", metadata={})

    result = asyncio.run(validator.validate_activity_data(activity))

    assert not result.is_valid
    assert codes(result.errors) == ["INVALID_TIMESTAMP_FORMAT", "MISSING_METADATA"]
    assert {e.severity for e in result.errors} == {"critical"}


def test_old_activity_warns_about_data_quality(validator):
    activity = ActivityData(
        activity_type="electricity",
        timestamp=(utcnow() - timedelta(days=45)).isoformat(),
        metadata={"kwh_consumed": 1},
        location=Location(postal_code="10001"),
    )

    result = asyncio.run(validator.validate_activity_data(activity))

    assert codes(result.warnings) == ["OLD_ACTIVITY_DATA"]
    assert result.is_valid


def test_calculation_result_cross_references(validator):
    activity = make_activity("electricity", {"kwh_consumed": 10})
    result = asyncio.run(calculation_engine.calculate_carbon(activity))

    validation = asyncio.run(validator.validate_calculation_result(result, activity))

    assert validation.is_valid
    assert [ref.source for ref in validation.cross_references] == [
        "carbonfund_org",
        "carbonfootprint_com",
        "epa_calculator",
        "climatiq",
    ]
    # variance is a percentage of our value
    carbonfootprint = validation.cross_references[1]
    assert carbonfootprint.expected_value == pytest.approx(4.4)
    assert carbonfootprint.variance == pytest.approx(abs(result.carbon_kg - 4.4) / result.carbon_kg * 100, abs=0.01)
    assert carbonfootprint.status == "close"
    assert validation.confidence == pytest.approx(0.85)


def test_cloud_compute_adds_cloud_reference(validator):
    activity = make_activity("cloud_compute")
    result = asyncio.run(calculation_engine.calculate_carbon(activity))

    references = validator.cross_reference(activity, result)

    assert references[-1].source == "cloud_carbon_footprint"


def test_result_above_reasonable_maximum_is_invalid(validator):
    activity = make_activity("commit", {"additions": 10, "deletions": 0})
    result = asyncio.run(calculation_engine.calculate_carbon(activity))
    inflated = result.model_copy(update={"carbon_kg": 0.5})

    validation = asyncio.run(validator.validate_calculation_result(inflated, activity))

    assert not validation.is_valid
    assert "RANGE_VALIDATION_FAILED" in codes(validation.errors)


def test_no_conflict_with_single_source(validator):
    activity = make_activity("electricity")
    result = asyncio.run(calculation_engine.calculate_carbon(activity))

    resolution = asyncio.run(validator.resolve_conflicts(activity, result))

    assert resolution["has_conflicts"] is False
    assert resolution["resolution_method"] == "insufficient_sources"


def test_conflict_with_egrid_estimate_is_resolved_by_weighted_average(validator):
    activity = make_activity("electricity", {"kwh_consumed": 10}, location=Location(postal_code="94105"))
    result = asyncio.run(calculation_engine.calculate_carbon(activity))
    doubled = result.model_copy(update={"carbon_kg": result.carbon_kg * 2})

    resolution = asyncio.run(validator.resolve_conflicts(activity, doubled))

    assert resolution["has_conflicts"] is True
    assert resolution["conflicting_sources"] == ["current_calculation", "EPA_eGRID"]
    egrid_value = 244.73 / 1000 * 10
    expected = (doubled.carbon_kg * 0.3 + egrid_value * 0.7) / 1.0
    assert resolution["resolved_value"] == pytest.approx(expected)
    assert resolution["confidence_reduction"] == pytest.approx(0.1)


def test_highest_confidence_strategy(validator):
    validator.update_validation_config(conflict_resolution_strategy="highest_confidence")
    activity = make_activity("electricity", {"kwh_consumed": 10}, location=Location(postal_code="94105"))
    result = asyncio.run(calculation_engine.calculate_carbon(activity))
    doubled = result.model_copy(update={"carbon_kg": result.carbon_kg * 2})

    resolution = asyncio.run(validator.resolve_conflicts(activity, doubled))

    # a very_high calculation (0.95) outranks eGRID (0.9)
    assert resolution["resolved_value"] == doubled.carbon_kg


def test_update_config(validator):
    config = validator.update_validation_config(max_variance_percent=40.0, outlier_threshold=None)

    assert config["max_variance_percent"] == 40.0
    assert config["outlier_threshold"] == DEFAULT_CONFIG["outlier_threshold"]
    with pytest.raises(ValueError):
        validator.update_validation_config(unknown_option=1)
    validator.reset()
    assert validator.get_validation_config() == DEFAULT_CONFIG


def test_helpers():
    assert variance_status(0.01) == "match"
    assert variance_status(0.10) == "close"
    assert variance_status(0.20) == "divergent"
    assert variance_status(0.50) == "failed"
    assert estimate_energy_consumption(make_activity("electricity", {"kwh_consumed": 7})) == 7
    assert estimate_energy_consumption(make_activity("cloud_compute", {"duration": 7200})) == pytest.approx(0.2)
