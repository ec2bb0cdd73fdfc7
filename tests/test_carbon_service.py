import asyncio

import pytest

from ecotrace_api.app.schemas.calculation import Location
from ecotrace_api.app.services.audit_service import AuditService
from ecotrace_api.app.services.carbon_service import CarbonService
from ecotrace_api.app.services.external_api_service import external_api_service
from tests.conftest import make_activity


def test_calculate_validates_and_audits():
    activity = make_activity("electricity", {"kwh_consumed": 10}, location=Location(postal_code="94105"))

    response = asyncio.run(CarbonService.calculate_carbon(activity, {"user_id": "u1"}))

    assert response.calculation.carbon_kg == pytest.approx(10 * 244.73 / 1000 * 1.15, abs=1e-5)
    assert response.validation.is_valid
    assert response.input_validation.is_valid
    performance = response.performance
    assert performance.data_fetch_time_ms == pytest.approx(performance.calculation_time_ms * 0.3, abs=1e-3)
    stored = asyncio.run(AuditService.get_audit_record(response.audit_id))
    assert stored["user_id"] == "u1"
    assert stored["validation_results"]["input"]["is_valid"] is True


def test_invalid_input_returns_audited_fallback():
    activity = make_activity("electricity", {"kwh_consumed": -5})

    response = asyncio.run(CarbonService.calculate_carbon(activity))

    assert response.calculation.carbon_kg == 0.001
    assert response.calculation.confidence == "low"
    assert response.validation.is_valid is False
    assert response.validation.errors[0].code == "SYSTEM_ERROR"
    assert "INVALID_RANGE" in [e.code for e in response.input_validation.errors]
    stored = asyncio.run(AuditService.get_audit_record(response.audit_id))
    assert stored["is_valid"] is False


def test_methodology_and_new_version():
    methodology = asyncio.run(CarbonService.get_methodology())
    assert methodology["current"]["version"] == "1.0.0"
    assert methodology["standards"] == ["IPCC_AR6", "GHG_Protocol", "SCI_Spec"]

    version = asyncio.run(
        CarbonService.create_methodology_version(["Add ISO 14064"], standards=["ISO_14064"])
    )

    assert version["version"] == "1.0.1"
    assert version["methodology"]["standards"] == ["ISO_14064"]
    assert version["created_by"] == "system"


def test_data_sources_report_epa_and_external_apis():
    sources = asyncio.run(CarbonService.get_data_sources())

    assert [s["name"] for s in sources["sources"]] == ["EPA eGRID", "Electricity Maps"]
    assert sources["epa_validation"]["is_valid"] is True
    assert sources["health"]["status"] == "healthy"


def test_confidence_indicators_reflect_open_breaker():
    asyncio.run(CarbonService.calculate_carbon(make_activity("electricity", location=Location(postal_code="94105"))))
    indicators = asyncio.run(CarbonService.get_confidence_indicators())
    assert indicators["data_source_reliability"]["electricity_maps"] == 0.92
    assert indicators["data_quality"]["total_calculations"] == 1
    assert indicators["data_quality"]["high_confidence_ratio"] == 1.0

    for _ in range(external_api_service.breaker.failure_threshold):
        external_api_service.breaker.record_failure()

    indicators = asyncio.run(CarbonService.get_confidence_indicators())
    assert indicators["data_source_reliability"]["electricity_maps"] == 0.3


def test_audit_trail():
    response = asyncio.run(CarbonService.calculate_carbon(make_activity("commit")))

    trail = asyncio.run(CarbonService.get_audit_trail(response.audit_id))

    assert trail["audit_record"]["id"] == response.audit_id
    assert trail["calculation_steps"][0]["name"] == "commit_emission"
    with pytest.raises(ValueError):
        asyncio.run(CarbonService.get_audit_trail("audit_missing"))


def test_service_health_and_info():
    health = asyncio.run(CarbonService.get_service_health())
    info = CarbonService.get_service_info()

    assert health["overall"] == "healthy"
    assert set(health["services"]) == {"calculation_engine", "validation", "audit", "epa_grid", "external_apis"}
    assert info["name"] == "CarbonCalculationService"
    assert "Audit trail" in info["features"]
