"""
Shared fixtures.

Every test gets its own SQLite database, an empty cache and freshly
reset service singletons.  Electricity Maps runs without a key and
without mock data, so no test touches the network.
"""

from datetime import timedelta

import pytest

from ecotrace_api.app.core.cache import cache
from ecotrace_api.app.core.config import settings
from ecotrace_api.app.core.db import init_db
from ecotrace_api.app.core.performance import performance_monitor
from ecotrace_api.app.core.realtime import hub
from ecotrace_api.app.core.timeutils import utcnow
from ecotrace_api.app.schemas.activity import ActivityCreate
from ecotrace_api.app.schemas.calculation import ActivityData
from ecotrace_api.app.services.egrid_service import egrid_service
from ecotrace_api.app.services.external_api_service import external_api_service
from ecotrace_api.app.services.validation_service import validation_service


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "database_url", str(tmp_path / "ecotrace-test.db"))
    monkeypatch.setattr(settings, "electricity_maps_api_key", "")
    monkeypatch.setattr(settings, "electricity_maps_mock", False)
    monkeypatch.setattr(settings, "epa_egrid_api_key", "")
    monkeypatch.setattr(settings, "environment", "development")
    init_db()
    cache.reset()
    hub.reset()
    performance_monitor.reset()
    external_api_service.reset()
    egrid_service.reset()
    validation_service.reset()
    yield
    cache.reset()
    hub.reset()
    egrid_service.reset()


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from ecotrace_api.app.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def now():
    return utcnow()


def make_activity(kind="electricity", metadata=None, **fields) -> ActivityData:
    """Calculation input with a current timestamp."""
    if metadata is None:
        metadata = {
            "electricity": {"kwh_consumed": 10},
            "commit": {"additions": 100, "deletions": 50, "changed_files": 3},
            "cloud_compute": {"duration": 3600, "instance_type": "m5.large"},
            "deployment": {"duration": 900},
        }.get(kind, {"size_gb": 100})
    return ActivityData(
        activity_type=kind,
        timestamp=utcnow().isoformat(),
        metadata=metadata,
        **fields,
    )


def make_record(user_id, kind="commit", carbon_kg=0.01, when=None, days_ago=0, **fields) -> ActivityCreate:
    """Developer activity with a known footprint."""
    timestamp = (when or utcnow()) - timedelta(days=days_ago)
    return ActivityCreate(
        user_id=user_id,
        type=kind,
        carbon_kg=carbon_kg,
        calculation_confidence=fields.pop("calculation_confidence", "high"),
        timestamp=timestamp,
        **fields,
    )
