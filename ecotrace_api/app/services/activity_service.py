"""
Business logic for developer activities.

Activities are stored in the ``activities`` table with their repository,
commit, CI and local-development payloads serialised as JSON.  Creating
an activity without a footprint runs it through ``CarbonService``; the
calculation itself is recorded in ``carbon_calculations``.  New
activities are broadcast on the realtime hub and invalidate the owner's
cached dashboard views.
"""

import json
import logging
import secrets
from typing import Any, Dict, List, Optional, Tuple

from ecotrace_api.app.core.cache import cache
from ecotrace_api.app.core.db import get_connection
from ecotrace_api.app.core.realtime import hub
from ecotrace_api.app.core.timeutils import to_iso
from ecotrace_api.app.schemas.activity import ActivityCreate, ActivityRead
from ecotrace_api.app.schemas.calculation import ActivityData
from ecotrace_api.app.services.carbon_service import CarbonService

logger = logging.getLogger(__name__)

LOCAL_DEV_KWH_PER_HOUR = 0.065
DEFAULT_CI_RUNNER = "medium"

ENGINE_TO_ACTIVITY_CONFIDENCE = {
    "very_high": "high",
    "high": "high",
    "medium": "medium",
    "low": "low",
}

COLUMNS = (
    "id, user_id, type, repository, commit_data, ci_data, local_data, "
    "carbon_kg, calculation_confidence, timestamp, created_at"
)


def dashboard_cache_prefix(user_id: str) -> str:
    return f"dashboard:{user_id}:"


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "model_dump"):
        value = value.model_dump()
    return json.dumps(value)


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


def _row_to_activity(row) -> ActivityRead:
    return ActivityRead(
        id=row["id"],
        user_id=row["user_id"],
        type=row["type"],
        repository=_loads(row["repository"]),
        commit=_loads(row["commit_data"]),
        ci_data=_loads(row["ci_data"]),
        local_data=_loads(row["local_data"]),
        carbon_kg=row["carbon_kg"],
        calculation_confidence=row["calculation_confidence"],
        timestamp=row["timestamp"],
        created_at=row["created_at"],
    )


def to_activity_data(data: ActivityCreate, timestamp: str) -> ActivityData:
    """Translate a developer activity into a calculation input."""
    ci_data = data.ci_data or {}
    if data.type in ("commit", "pr"):
        commit = data.commit
        metadata = {
            "additions": commit.additions if commit else 0,
            "deletions": commit.deletions if commit else 0,
            "changed_files": commit.changed_files if commit else 0,
        }
        return ActivityData(activity_type="commit", timestamp=timestamp, metadata=metadata)
    if data.type == "deployment":
        return ActivityData(
            activity_type="deployment",
            timestamp=timestamp,
            metadata={"duration": float(ci_data.get("duration_seconds") or 0)},
        )
    if data.type == "ci_run":
        return ActivityData(
            activity_type="cloud_compute",
            timestamp=timestamp,
            metadata={
                "duration": float(ci_data.get("duration_seconds") or 0),
                "instance_type": ci_data.get("runner_size") or DEFAULT_CI_RUNNER,
            },
        )
    minutes = float((data.local_data or {}).get("duration_minutes") or 0)
    return ActivityData(
        activity_type="electricity",
        timestamp=timestamp,
        metadata={"kwh_consumed": minutes / 60 * LOCAL_DEV_KWH_PER_HOUR},
    )


class ActivityService:
    """Service class for recording and reading activities."""

    @staticmethod
    def generate_activity_id() -> str:
        return f"act_{secrets.token_hex(8)}"

    @classmethod
    async def _estimate(cls, data: ActivityCreate, timestamp: str) -> Tuple[float, str, Dict[str, Any]]:
        response = await CarbonService.calculate_carbon(
            to_activity_data(data, timestamp), user_context={"user_id": data.user_id}
        )
        calculation = response.calculation
        confidence = ENGINE_TO_ACTIVITY_CONFIDENCE.get(calculation.confidence, "low")
        record = {
            "request_id": calculation.request_id,
            "carbon_kg": calculation.carbon_kg,
            "confidence": calculation.confidence,
            "methodology_version": calculation.methodology.version,
            "calculated_at": calculation.calculated_at,
        }
        return calculation.carbon_kg, confidence, record

    @classmethod
    async def create_activity(cls, data: ActivityCreate) -> ActivityRead:
        """Store an activity, calculating its footprint if needed.

        Parameters
        ----------
        data : ActivityCreate
            The activity.  When ``carbon_kg`` is ``None`` the footprint
            and confidence come from ``CarbonService``.

        Returns
        -------
        ActivityRead
            The stored activity.
        """
        activity_id = cls.generate_activity_id()
        timestamp = to_iso(data.timestamp)
        calculation = None
        if data.carbon_kg is None:
            carbon_kg, confidence, calculation = await cls._estimate(data, timestamp)
        else:
            carbon_kg = data.carbon_kg
            confidence = data.calculation_confidence or "medium"
        created_at = to_iso()

        conn = get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                f"INSERT INTO activities ({COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    activity_id,
                    data.user_id,
                    data.type,
                    _dumps(data.repository),
                    _dumps(data.commit),
                    _dumps(data.ci_data),
                    _dumps(data.local_data),
                    carbon_kg,
                    confidence,
                    timestamp,
                    created_at,
                ),
            )
            if calculation is not None:
                cursor.execute(
                    """
                    INSERT INTO carbon_calculations
                        (activity_id, request_id, carbon_kg, confidence, methodology_version, calculated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        activity_id,
                        calculation["request_id"],
                        calculation["carbon_kg"],
                        calculation["confidence"],
                        calculation["methodology_version"],
                        calculation["calculated_at"],
                    ),
                )
            # Stored rankings no longer reflect this user's totals.
            cursor.execute("DELETE FROM leaderboard_entries")
            conn.commit()
        finally:
            conn.close()

        logger.info(
            "Activity %s stored for %s (%s, %.5f kg)", activity_id, data.user_id, data.type, carbon_kg
        )
        repository = data.repository.model_dump() if data.repository else None
        hub.broadcast_carbon_update(data.user_id, activity_id, carbon_kg, confidence, timestamp)
        hub.broadcast_activity_update(data.user_id, activity_id, data.type, repository, timestamp)
        cache.delete_prefix(dashboard_cache_prefix(data.user_id))

        return ActivityRead(
            id=activity_id,
            user_id=data.user_id,
            type=data.type,
            repository=data.repository,
            commit=data.commit,
            ci_data=data.ci_data,
            local_data=data.local_data,
            carbon_kg=carbon_kg,
            calculation_confidence=confidence,
            timestamp=timestamp,
            created_at=created_at,
        )

    @classmethod
    async def get_activity(cls, activity_id: str) -> Optional[ActivityRead]:
        conn = get_connection()
        try:
            row = conn.execute(
                f"SELECT {COLUMNS} FROM activities WHERE id = ?", (activity_id,)
            ).fetchone()
        finally:
            conn.close()
        return _row_to_activity(row) if row else None

    @classmethod
    async def list_activities(
        cls,
        user_id: str,
        limit: int = 25,
        offset: int = 0,
        type: Optional[str] = None,
        since: Optional[str] = None,
    ) -> Tuple[List[ActivityRead], int]:
        """Return a page of a user's activities, newest first, and the total count."""
        where_clauses = ["user_id = ?"]
        params: List[Any] = [user_id]
        if type and type != "all":
            where_clauses.append("type = ?")
            params.append(type)
        if since:
            where_clauses.append("timestamp >= ?")
            params.append(to_iso(since))
        where = " WHERE " + " AND ".join(where_clauses)
        conn = get_connection()
        try:
            cursor = conn.cursor()
            total = cursor.execute(f"SELECT COUNT(*) FROM activities{where}", tuple(params)).fetchone()[0]
            rows = cursor.execute(
                f"SELECT {COLUMNS} FROM activities{where} ORDER BY timestamp DESC LIMIT ? OFFSET ?",
                tuple(params + [limit, offset]),
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_activity(row) for row in rows], total

    @classmethod
    async def list_activities_between(
        cls, user_id: Optional[str], start: str, end: str
    ) -> List[ActivityRead]:
        """Activities with ``start <= timestamp < end``, oldest first.

        ``user_id=None`` returns the activities of every user.
        """
        query = f"SELECT {COLUMNS} FROM activities WHERE timestamp >= ? AND timestamp < ?"
        params: List[Any] = [to_iso(start), to_iso(end)]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        conn = get_connection()
        try:
            rows = conn.execute(query + " ORDER BY timestamp", tuple(params)).fetchall()
        finally:
            conn.close()
        return [_row_to_activity(row) for row in rows]

    @classmethod
    async def delete_activity(cls, activity_id: str) -> None:
        """Delete an activity.

        Raises ``ValueError`` if it does not exist.
        """
        conn = get_connection()
        try:
            cursor = conn.cursor()
            row = cursor.execute("SELECT user_id FROM activities WHERE id = ?", (activity_id,)).fetchone()
            if row is None:
                raise ValueError(f"Activity {activity_id} not found")
            cursor.execute("DELETE FROM activities WHERE id = ?", (activity_id,))
            cursor.execute("DELETE FROM leaderboard_entries")
            conn.commit()
        finally:
            conn.close()
        cache.delete_prefix(dashboard_cache_prefix(row["user_id"]))
        logger.info("Activity %s deleted", activity_id)
