import pytest
import requests

from ecotrace_api.app.core.config import settings
from ecotrace_api.app.services.external_api_service import ExternalAPIService


class FakeResponse:
    def __init__(self, payload, headers=None):
        self.payload = payload
        self.headers = headers or {}

    def raise_for_status(self):
        pass

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, payload=None, error=None, headers=None):
        self.payload = payload
        self.error = error
        self.headers = headers
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append((url, params, headers))
        if self.error is not None:
            raise self.error
        return FakeResponse(self.payload, self.headers)


@pytest.fixture
def with_key(monkeypatch):
    monkeypatch.setattr(settings, "electricity_maps_api_key", "secret")


def test_unconfigured_returns_nothing():
    service = ExternalAPIService(session=FakeSession({"carbonIntensity": 300}))

    assert service.get_electricity_maps_data("DE") is None
    assert service.session.calls == []
    assert service.get_api_health()["status"] == "not_configured"
    assert service.health_check()["status"] == "healthy"


def test_mock_mode(monkeypatch):
    monkeypatch.setattr(settings, "electricity_maps_mock", True)
    service = ExternalAPIService()

    france = service.get_electricity_maps_data("FR")
    elsewhere = service.get_electricity_maps_data("BR")

    assert (france.carbon_intensity, france.renewable) == (180, 75)
    assert (elsewhere.carbon_intensity, elsewhere.fossil) == (400, 65)


def test_fetch_is_cached(with_key):
    session = FakeSession(
        {"carbonIntensity": 321, "renewablePercentage": 40, "isEstimated": True},
        headers={"x-ratelimit-remaining": "998"},
    )
    service = ExternalAPIService(session=session)

    first = service.get_electricity_maps_data("DE")
    second = service.get_electricity_maps_data("DE")

    assert first.carbon_intensity == 321.0
    assert first.source == "forecast"
    assert second.carbon_intensity == 321.0
    assert len(session.calls) == 1
    url, params, headers = session.calls[0]
    assert url.endswith("/carbon-intensity/latest")
    assert params == {"zone": "DE"}
    assert headers == {"auth-token": "secret"}
    assert service.get_rate_limit_status()[0]["remaining"] == 998
    assert service.get_api_health()["status"] == "healthy"


def test_failures_open_the_breaker(with_key):
    session = FakeSession(error=requests.ConnectionError("down"))
    service = ExternalAPIService(session=session)

    for _ in range(6):
        assert service.get_electricity_maps_data("DE") is None

    assert len(session.calls) == 5
    assert service.get_circuit_breaker_states()["electricity_maps"]["state"] == "open"
    health = service.health_check()
    assert health["status"] == "unhealthy"
    assert health["services"][0]["error_count"] == 5

    service.force_refresh()
    assert service.get_circuit_breaker_states()["electricity_maps"]["state"] == "closed"


def test_quota_exhaustion_skips_calls(with_key, monkeypatch):
    monkeypatch.setattr(settings, "electricity_maps_hourly_limit", 2)
    session = FakeSession({"carbonIntensity": 100})
    service = ExternalAPIService(session=session)

    service.get_electricity_maps_data("DE")
    service.get_electricity_maps_data("FR")
    status = service.get_rate_limit_status()[0]

    assert service.get_electricity_maps_data("NO") is None
    assert len(session.calls) == 2
    assert status["remaining"] == 0
    assert status["is_near_limit"] is True


def test_force_refresh_drops_one_zone(with_key):
    service = ExternalAPIService(session=FakeSession({"carbonIntensity": 200}))
    service.get_electricity_maps_data("DE")
    service.get_electricity_maps_data("FR")

    assert service.force_refresh("DE") == 1
    assert service.force_refresh() == 1


def test_data_sources():
    source = ExternalAPIService().get_data_sources()[0]

    assert source.name == "Electricity Maps"
    assert source.freshness == "real_time"
    assert source.reliability == 0.0


def test_malformed_payload_counts_as_failure(with_key):
    service = ExternalAPIService(session=FakeSession(["not", "a", "dict"]))

    assert service.get_electricity_maps_data("DE") is None
    health = service.get_api_health()
    assert health["error_count"] == 1
    assert "list" in health["last_error"]["message"]
    assert service.get_circuit_breaker_states()["electricity_maps"]["failures"] == 1
