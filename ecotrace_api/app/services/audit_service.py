"""
Audit trail for carbon calculations and methodology versions.

Every calculation served by ``CarbonService`` is written to the
``calculation_audits`` table together with its input, result, timing
and the validation outcome, so that any published figure can be traced
back to the data and methodology that produced it.  Records are kept
for ``settings.audit_retention_days`` and capped at
``settings.audit_max_records`` by ``cleanup``.

Methodology versions live in ``methodology_versions``.  Version 1.0.0
describes the engine's built-in methodology and is created on first
use; later versions bump the patch number.
"""

from __future__ import annotations

import json
import logging
import math
import platform
import secrets
import socket
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from ecotrace_api.app.core.config import settings
from ecotrace_api.app.core.db import get_connection
from ecotrace_api.app.core.timeutils import to_iso
from ecotrace_api.app.schemas.calculation import (
    ActivityData,
    AuditEntry,
    CalculationMethodology,
    CarbonCalculationResult,
    PerformanceMetrics,
    ValidationResult,
)
from ecotrace_api.app.services.calculation_engine import (
    ASSUMPTIONS,
    ENGINE_VERSION,
    METHODOLOGY_NAME,
    STANDARDS,
    generate_request_id,
)
from ecotrace_api.app.services.validation_service import CONFIDENCE_SCORES

logger = logging.getLogger(__name__)

INITIAL_METHODOLOGY_VERSION = "1.0.0"


def _version_key(version: str):
    try:
        return tuple(int(part) for part in version.split("."))
    except ValueError:
        return (0,)


def _loads(value: Optional[str]) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def percentile_index(values: List[float], pct: float) -> float:
    """Nearest-rank percentile of already sorted ``values``."""
    if not values:
        return 0.0
    index = max(0, math.ceil(pct / 100 * len(values)) - 1)
    return values[min(index, len(values) - 1)]


def _system_info() -> Dict[str, Any]:
    return {
        "version": ENGINE_VERSION,
        "api_version": settings.api_version,
        "environment": settings.environment,
        "python_version": platform.python_version(),
        "hostname": socket.gethostname(),
    }


def initial_methodology() -> CalculationMethodology:
    return CalculationMethodology(
        name=METHODOLOGY_NAME,
        version=INITIAL_METHODOLOGY_VERSION,
        assumptions=list(ASSUMPTIONS),
        standards=list(STANDARDS),
    )


class AuditService:
    """Service class for writing and querying calculation audits."""

    @staticmethod
    def generate_audit_id() -> str:
        return f"audit_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"

    @classmethod
    async def record_calculation(
        cls,
        activity: ActivityData,
        result: CarbonCalculationResult,
        performance: PerformanceMetrics,
        user_context: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Persist a calculation and append an audit entry to its trail.

        Parameters
        ----------
        activity : ActivityData
            The calculation input.
        result : CarbonCalculationResult
            The engine output.  An ``AuditEntry`` referencing the new
            record is appended to ``result.audit_trail``.
        performance : PerformanceMetrics
            Timing figures for the request.
        user_context : Optional[dict]
            Caller information such as ``user_id``.

        Returns
        -------
        str
            The audit record id.
        """
        audit_id = cls.generate_audit_id()
        request_id = result.request_id or generate_request_id()
        created_at = to_iso()
        system_info = _system_info()
        result.audit_trail.append(
            AuditEntry(
                timestamp=created_at,
                action="calculate",
                details={
                    "request_id": request_id,
                    "audit_id": audit_id,
                    "version": result.methodology.version,
                },
                system_info={
                    "version": system_info["version"],
                    "environment": system_info["environment"],
                    "request_id": request_id,
                },
            )
        )
        user_id = (user_context or {}).get("user_id")
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO calculation_audits (
                    id, request_id, activity_type, user_id, carbon_kg, confidence,
                    total_time_ms, activity_data, calculation_result,
                    performance_metrics, system_info, user_context, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    audit_id,
                    request_id,
                    activity.activity_type,
                    user_id,
                    result.carbon_kg,
                    result.confidence,
                    performance.total_time_ms,
                    activity.model_dump_json(),
                    result.model_dump_json(),
                    performance.model_dump_json(),
                    json.dumps(system_info),
                    json.dumps(user_context) if user_context else None,
                    created_at,
                ),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info(
            "Calculation audit recorded: %s (%s, %.5f kg, %s)",
            audit_id,
            activity.activity_type,
            result.carbon_kg,
            result.confidence,
            extra={"context": {"audit_id": audit_id, "request_id": request_id}},
        )
        return audit_id

    @classmethod
    async def record_validation(
        cls,
        request_id: str,
        validation: ValidationResult,
        input_validation: Optional[ValidationResult] = None,
    ) -> bool:
        """Attach validation results to the audit record of ``request_id``.

        Returns ``True`` if a record was updated.
        """
        payload = {
            "result": validation.model_dump(),
            "input": input_validation.model_dump() if input_validation else None,
        }
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE calculation_audits
                SET validation_results = ?, is_valid = ?, validation_confidence = ?
                WHERE id = (
                    SELECT id FROM calculation_audits WHERE request_id = ?
                    ORDER BY created_at DESC LIMIT 1
                )
                """,
                (json.dumps(payload), int(validation.is_valid), validation.confidence, request_id),
            )
            conn.commit()
            updated = cursor.rowcount > 0
        finally:
            conn.close()
        if updated:
            logger.info(
                "Validation audit recorded for %s (valid=%s, confidence=%.2f)",
                request_id,
                validation.is_valid,
                validation.confidence,
            )
        else:
            logger.warning("No audit record found for request %s", request_id)
        return updated

    @staticmethod
    def _row_to_record(row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "timestamp": row["created_at"],
            "request_id": row["request_id"],
            "activity_type": row["activity_type"],
            "user_id": row["user_id"],
            "carbon_kg": row["carbon_kg"],
            "confidence": row["confidence"],
            "is_valid": None if row["is_valid"] is None else bool(row["is_valid"]),
            "validation_confidence": row["validation_confidence"],
            "total_time_ms": row["total_time_ms"],
            "activity_data": _loads(row["activity_data"]),
            "calculation_result": _loads(row["calculation_result"]),
            "validation_results": _loads(row["validation_results"]),
            "performance_metrics": _loads(row["performance_metrics"]),
            "system_info": _loads(row["system_info"]),
            "user_context": _loads(row["user_context"]),
        }

    @classmethod
    async def get_audit_record(cls, audit_id: str) -> Optional[Dict[str, Any]]:
        conn = get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM calculation_audits WHERE id = ?", (audit_id,)
            ).fetchone()
        finally:
            conn.close()
        return cls._row_to_record(row) if row else None

    @classmethod
    async def query_audit_records(
        cls,
        request_id: Optional[str] = None,
        activity_type: Optional[str] = None,
        user_id: Optional[str] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
        confidence_level: Optional[str] = None,
        min_carbon: Optional[float] = None,
        max_carbon: Optional[float] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """Filter audit records, newest first.

        ``user_id='all'`` disables the user filter.  ``start`` and ``end``
        are ISO timestamps and are inclusive.  Raises ``ValueError`` on
        an unparsable timestamp.
        """
        where_clauses: List[str] = []
        params: List[Any] = []
        if request_id:
            where_clauses.append("request_id = ?")
            params.append(request_id)
        if activity_type:
            where_clauses.append("activity_type = ?")
            params.append(activity_type)
        if user_id and user_id != "all":
            where_clauses.append("user_id = ?")
            params.append(user_id)
        if start:
            where_clauses.append("created_at >= ?")
            params.append(to_iso(start))
        if end:
            where_clauses.append("created_at <= ?")
            params.append(to_iso(end))
        if confidence_level:
            where_clauses.append("confidence = ?")
            params.append(confidence_level)
        if min_carbon is not None:
            where_clauses.append("carbon_kg >= ?")
            params.append(min_carbon)
        if max_carbon is not None:
            where_clauses.append("carbon_kg <= ?")
            params.append(max_carbon)
        where = " WHERE " + " AND ".join(where_clauses) if where_clauses else ""

        conn = get_connection()
        try:
            cursor = conn.cursor()
            total = cursor.execute(
                f"SELECT COUNT(*) FROM calculation_audits{where}", tuple(params)
            ).fetchone()[0]
            rows = cursor.execute(
                f"SELECT * FROM calculation_audits{where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                tuple(params + [limit, offset]),
            ).fetchall()
        finally:
            conn.close()
        return {
            "records": [cls._row_to_record(row) for row in rows],
            "total": total,
            "has_more": offset + limit < total,
        }

    @classmethod
    async def get_audit_statistics(
        cls, start: Optional[str] = None, end: Optional[str] = None
    ) -> Dict[str, Any]:
        """Aggregate figures over the audit records in ``[start, end]``."""
        where_clauses: List[str] = []
        params: List[Any] = []
        if start:
            where_clauses.append("created_at >= ?")
            params.append(to_iso(start))
        if end:
            where_clauses.append("created_at <= ?")
            params.append(to_iso(end))
        where = " WHERE " + " AND ".join(where_clauses) if where_clauses else ""
        conn = get_connection()
        try:
            rows = conn.execute(
                "SELECT activity_type, confidence, is_valid, validation_confidence, total_time_ms "
                f"FROM calculation_audits{where}",
                tuple(params),
            ).fetchall()
        finally:
            conn.close()

        total = len(rows)
        confidence_distribution: Dict[str, int] = {}
        activity_distribution: Dict[str, int] = {}
        quality = {"high_confidence": 0, "medium_confidence": 0, "low_confidence": 0}
        invalid = 0
        times = sorted(row["total_time_ms"] or 0.0 for row in rows)
        for row in rows:
            confidence_distribution[row["confidence"]] = confidence_distribution.get(row["confidence"], 0) + 1
            activity_distribution[row["activity_type"]] = activity_distribution.get(row["activity_type"], 0) + 1
            if row["is_valid"] is not None and not row["is_valid"]:
                invalid += 1
            score = row["validation_confidence"]
            if score is None:
                score = CONFIDENCE_SCORES.get(row["confidence"], 0.5)
            if score >= 0.8:
                quality["high_confidence"] += 1
            elif score >= 0.6:
                quality["medium_confidence"] += 1
            else:
                quality["low_confidence"] += 1

        return {
            "total_calculations": total,
            "average_response_time_ms": round(sum(times) / total, 2) if total else 0.0,
            "confidence_distribution": confidence_distribution,
            "activity_type_distribution": activity_distribution,
            "error_rate": invalid / total if total else 0.0,
            "performance_metrics": {
                "p50": percentile_index(times, 50),
                "p95": percentile_index(times, 95),
                "p99": percentile_index(times, 99),
            },
            "data_quality_metrics": quality,
        }

    # Methodology versions ---------------------------------------------

    @staticmethod
    def _ensure_initial_version(cursor) -> None:
        count = cursor.execute("SELECT COUNT(*) FROM methodology_versions").fetchone()[0]
        if count:
            return
        cursor.execute(
            """
            INSERT INTO methodology_versions (version, methodology, changes, created_by, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                INITIAL_METHODOLOGY_VERSION,
                initial_methodology().model_dump_json(),
                json.dumps([]),
                "system",
                to_iso(),
            ),
        )
        logger.info("Seeded methodology version %s", INITIAL_METHODOLOGY_VERSION)

    @staticmethod
    def _row_to_version(row) -> Dict[str, Any]:
        return {
            "version": row["version"],
            "methodology": _loads(row["methodology"]),
            "changes": _loads(row["changes"]) or [],
            "created_by": row["created_by"],
            "created_at": row["created_at"],
            "deprecated": bool(row["deprecated"]),
            "superseded_by": row["superseded_by"],
        }

    @classmethod
    def _load_versions(cls) -> List[Dict[str, Any]]:
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cls._ensure_initial_version(cursor)
            conn.commit()
            rows = cursor.execute("SELECT * FROM methodology_versions").fetchall()
        finally:
            conn.close()
        versions = [cls._row_to_version(row) for row in rows]
        versions.sort(key=lambda v: _version_key(v["version"]), reverse=True)
        return versions

    @classmethod
    async def get_all_methodology_versions(cls) -> List[Dict[str, Any]]:
        """All versions, newest first."""
        return cls._load_versions()

    @classmethod
    async def get_methodology_version(cls, version: str) -> Optional[Dict[str, Any]]:
        for item in cls._load_versions():
            if item["version"] == version:
                return item
        return None

    @classmethod
    async def get_current_methodology_version(cls) -> Dict[str, Any]:
        """Newest non-deprecated version (newest overall if all are deprecated)."""
        versions = cls._load_versions()
        for item in versions:
            if not item["deprecated"]:
                return item
        return versions[0]

    @classmethod
    async def create_methodology_version(
        cls, methodology: CalculationMethodology, changes: List[str], created_by: str
    ) -> str:
        """Store ``methodology`` as the next patch version and return it."""
        current = await cls.get_current_methodology_version()
        latest = cls._load_versions()[0]
        major, minor, patch = (list(_version_key(latest["version"])) + [0, 0, 0])[:3]
        version = f"{major}.{minor}.{patch + 1}"
        now = to_iso()
        stored = methodology.model_copy(update={"version": version})
        change_log = [{"description": change, "timestamp": now} for change in changes]
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO methodology_versions (version, methodology, changes, created_by, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (version, stored.model_dump_json(), json.dumps(change_log), created_by, now),
            )
            cursor.execute(
                "UPDATE methodology_versions SET superseded_by = ? WHERE version = ?",
                (version, current["version"]),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info(
            "Methodology version %s created by %s (%d changes)", version, created_by, len(changes)
        )
        return version

    @classmethod
    async def deprecate_methodology_version(
        cls, version: str, superseded_by: Optional[str] = None
    ) -> Dict[str, Any]:
        """Mark ``version`` as deprecated.

        Raises
        ------
        ValueError
            If the version does not exist.
        """
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cls._ensure_initial_version(cursor)
            cursor.execute(
                """
                UPDATE methodology_versions
                SET deprecated = 1, superseded_by = COALESCE(?, superseded_by)
                WHERE version = ?
                """,
                (superseded_by, version),
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise ValueError(f"Methodology version {version} not found")
            row = cursor.execute(
                "SELECT * FROM methodology_versions WHERE version = ?", (version,)
            ).fetchone()
        finally:
            conn.close()
        logger.info("Methodology version %s deprecated", version)
        return cls._row_to_version(row)

    # Maintenance ------------------------------------------------------

    @classmethod
    async def cleanup(
        cls, retention_days: Optional[int] = None, max_records: Optional[int] = None
    ) -> int:
        """Delete records older than the retention period and cap the total.

        Returns the number of deleted records.
        """
        retention_days = settings.audit_retention_days if retention_days is None else retention_days
        max_records = settings.audit_max_records if max_records is None else max_records
        cutoff = (datetime.now(timezone.utc) - timedelta(days=retention_days)).isoformat(
            timespec="microseconds"
        )
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM calculation_audits WHERE created_at < ?", (cutoff,))
            deleted = cursor.rowcount
            cursor.execute(
                """
                DELETE FROM calculation_audits WHERE id IN (
                    SELECT id FROM calculation_audits ORDER BY created_at DESC LIMIT -1 OFFSET ?
                )
                """,
                (max_records,),
            )
            deleted += cursor.rowcount
            conn.commit()
        finally:
            conn.close()
        if deleted:
            logger.info(
                "Audit cleanup removed %d records (retention %d days, cap %d)",
                deleted,
                retention_days,
                max_records,
            )
        return deleted

    @classmethod
    async def get_service_status(cls) -> Dict[str, Any]:
        conn = get_connection()
        try:
            cursor = conn.cursor()
            row = cursor.execute(
                "SELECT COUNT(*) AS total, MIN(created_at) AS oldest, MAX(created_at) AS newest "
                "FROM calculation_audits"
            ).fetchone()
            versions = cursor.execute("SELECT COUNT(*) FROM methodology_versions").fetchone()[0]
        finally:
            conn.close()
        return {
            "total_records": row["total"],
            "methodology_versions": max(versions, 1),
            "oldest_record": row["oldest"],
            "newest_record": row["newest"],
            "retention_days": settings.audit_retention_days,
            "max_records": settings.audit_max_records,
        }
