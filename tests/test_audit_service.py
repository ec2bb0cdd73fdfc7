import asyncio
from datetime import timedelta

import pytest

from ecotrace_api.app.core.db import get_cursor
from ecotrace_api.app.core.timeutils import to_iso, utcnow
from ecotrace_api.app.schemas.calculation import PerformanceMetrics, ValidationResult
from ecotrace_api.app.services.audit_service import AuditService, initial_methodology, percentile_index
from ecotrace_api.app.services.calculation_engine import calculation_engine
from tests.conftest import make_activity


def record(kind="electricity", metadata=None, user_id=None, total_ms=10.0, valid=True, confidence=0.9):
    activity = make_activity(kind, metadata)
    result = asyncio.run(calculation_engine.calculate_carbon(activity))
    performance = PerformanceMetrics(
        calculation_time_ms=total_ms / 2,
        data_fetch_time_ms=total_ms * 0.15,
        validation_time_ms=1.0,
        total_time_ms=total_ms,
    )
    context = {"user_id": user_id} if user_id else None
    audit_id = asyncio.run(AuditService.record_calculation(activity, result, performance, context))
    validation = ValidationResult(is_valid=valid, confidence=confidence)
    asyncio.run(AuditService.record_validation(result.request_id, validation))
    return audit_id, result


def test_record_and_read_back():
    audit_id, result = record(user_id="u1")

    stored = asyncio.run(AuditService.get_audit_record(audit_id))

    assert stored["request_id"] == result.request_id
    assert stored["user_id"] == "u1"
    assert stored["is_valid"] is True
    assert stored["validation_confidence"] == 0.9
    assert stored["validation_results"]["result"]["is_valid"] is True
    assert stored["calculation_result"]["audit_trail"][-1]["details"]["audit_id"] == audit_id
    assert stored["system_info"]["version"] == "1.0.0"
    assert asyncio.run(AuditService.get_audit_record("audit_missing")) is None


def test_record_validation_for_unknown_request():
    updated = asyncio.run(
        AuditService.record_validation("calc_unknown", ValidationResult(is_valid=True, confidence=1.0))
    )

    assert updated is False


def test_query_filters_and_pagination():
    record(user_id="u1")
    record(kind="commit", user_id="u1")
    record(kind="commit", user_id="u2")

    by_user = asyncio.run(AuditService.query_audit_records(user_id="u1"))
    commits = asyncio.run(AuditService.query_audit_records(activity_type="commit", limit=1))
    heavy = asyncio.run(AuditService.query_audit_records(min_carbon=1.0))
    everyone = asyncio.run(AuditService.query_audit_records(user_id="all"))

    assert by_user["total"] == 2
    assert commits["total"] == 2
    assert len(commits["records"]) == 1
    assert commits["has_more"] is True
    assert [r["activity_type"] for r in heavy["records"]] == ["electricity"]
    assert everyone["total"] == 3


def test_query_rejects_bad_dates():
    with pytest.raises(ValueError):
        asyncio.run(AuditService.query_audit_records(start="not a date"))


def test_statistics():
    record(total_ms=10, confidence=0.9)
    record(total_ms=20, confidence=0.7)
    record(kind="commit", total_ms=30, valid=False, confidence=0.3)

    stats = asyncio.run(AuditService.get_audit_statistics())

    assert stats["total_calculations"] == 3
    assert stats["average_response_time_ms"] == 20.0
    assert stats["activity_type_distribution"] == {"electricity": 2, "commit": 1}
    assert stats["error_rate"] == pytest.approx(1 / 3)
    assert stats["performance_metrics"]["p50"] == 20
    assert stats["performance_metrics"]["p99"] == 30
    assert stats["data_quality_metrics"] == {
        "high_confidence": 1,
        "medium_confidence": 1,
        "low_confidence": 1,
    }


def test_methodology_versions():
    current = asyncio.run(AuditService.get_current_methodology_version())
    assert current["version"] == "1.0.0"

    version = asyncio.run(
        AuditService.create_methodology_version(initial_methodology(), ["New factors"], "analyst")
    )
    versions = asyncio.run(AuditService.get_all_methodology_versions())

    assert version == "1.0.1"
    assert [v["version"] for v in versions] == ["1.0.1", "1.0.0"]
    assert versions[1]["superseded_by"] == "1.0.1"
    assert versions[0]["changes"][0]["description"] == "New factors"
    assert versions[0]["methodology"]["version"] == "1.0.1"

    deprecated = asyncio.run(AuditService.deprecate_methodology_version("1.0.1"))
    assert deprecated["deprecated"] is True
    assert asyncio.run(AuditService.get_current_methodology_version())["version"] == "1.0.0"
    with pytest.raises(ValueError):
        asyncio.run(AuditService.deprecate_methodology_version("9.9.9"))


def test_cleanup_applies_retention_and_cap():
    old_id, _ = record()
    record()
    record()
    with get_cursor() as cursor:
        cursor.execute(
            "UPDATE calculation_audits SET created_at = ? WHERE id = ?",
            (to_iso(utcnow() - timedelta(days=400)), old_id),
        )

    deleted = asyncio.run(AuditService.cleanup(retention_days=365, max_records=1))

    assert deleted == 2
    assert asyncio.run(AuditService.get_service_status())["total_records"] == 1


def test_percentile_index():
    assert percentile_index([], 95) == 0.0
    assert percentile_index([1, 2, 3, 4], 50) == 2
    assert percentile_index([1, 2, 3, 4], 95) == 4
