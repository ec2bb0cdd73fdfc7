import pytest
import requests

from ecotrace_api.app.core.db import get_cursor
from ecotrace_api.app.services.egrid_service import EGridService


@pytest.fixture
def egrid():
    return EGridService()


def test_postal_code_maps_to_builtin_subregion(egrid):
    data = egrid.get_emission_factor("94105")

    assert data.subregion == "CAMX"
    assert data.emission_rate == 244.73
    assert data.postal_codes[0] == "90000"


def test_unknown_prefix_uses_nearest_within_range(egrid):
    # 769 is not mapped; 768 is ERCOT
    assert egrid.get_emission_factor("76901").subregion == "ERCT"


def test_far_or_invalid_postal_codes_return_none(egrid):
    assert egrid.get_emission_factor("50301") is None
    assert egrid.get_emission_factor("AB1") is None
    assert egrid.get_emission_factor("") is None


def test_database_data_takes_precedence(egrid):
    with get_cursor() as cursor:
        cursor.execute(
            "INSERT INTO egrid_subregions (subregion, name, state, emission_rate, year, source, last_updated) "
            "VALUES ('NWPP', 'WECC Northwest', 'WA', 290.1, 2023, 'EPA_eGRID_2023', '2025-01-01T00:00:00+00:00')"
        )
        cursor.execute("INSERT INTO egrid_postal_codes (prefix, subregion, state) VALUES ('981', 'NWPP', 'WA')")

    data = egrid.get_emission_factor("98101")

    assert data.subregion == "NWPP"
    assert egrid.data_origin == "database"
    assert egrid.get_all_subregions() == ["NWPP"]


def test_integrity_report_flags_coverage_gaps(egrid):
    report = egrid.validate_data_integrity()

    assert report["is_valid"] is True
    assert report["statistics"]["subregions"] == 3
    assert "NWPP" in report["statistics"]["coverage_gaps"]
    assert report["statistics"]["origin"] == "fallback"


class FakeResponse:
    def __init__(self, text="", status=200):
        self.text = text
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, responses):
        self.responses = responses

    def get(self, url, **kwargs):
        return self.responses.get(url, FakeResponse(status=404))


def test_refresh_failure_raises_runtime_error(egrid):
    with pytest.raises(RuntimeError):
        egrid.refresh(session=FakeSession({}))


EGRID_CSV = (
    "eGRID subregion acronym,eGRID subregion name,State abbreviation,"
    "eGRID subregion CO2 equivalent total output emission rate (lb/MWh),Data year\n"
    'NWPP,WECC Northwest,WA,"640.0",2022\n'
    "BAD,,,,\n"
)


def test_refresh_from_csv_stores_converted_rates(egrid):
    from ecotrace_api.app.core.config import settings

    session = FakeSession({settings.epa_egrid_csv_url: FakeResponse(EGRID_CSV)})

    assert egrid.refresh(session=session) == 1
    data = egrid.get_subregion_data("nwpp")
    assert data.emission_rate == pytest.approx(290.299, abs=1e-3)
    assert data.source == "EPA_eGRID_2022"
    assert egrid.data_origin == "database"
