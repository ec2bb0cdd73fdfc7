"""
Leaderboard computation and storage.

A leaderboard ranks the users who were active in a period by carbon
efficiency: kilograms of CO2e per line of code added, or total carbon
for users who added no lines.  Lower is better.  Rankings are stored in
``leaderboard_entries`` and replaced wholesale by ``update_leaderboard``,
which ``manage.py update-leaderboards`` runs periodically.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ecotrace_api.app.core.config import settings
from ecotrace_api.app.core.db import get_connection
from ecotrace_api.app.core.realtime import hub
from ecotrace_api.app.core.timeutils import parse_timestamp, to_iso, utcnow
from ecotrace_api.app.services.activity_service import ActivityService
from ecotrace_api.app.services.user_service import UserService

logger = logging.getLogger(__name__)

PERIODS = ("day", "week", "month", "all_time")
ALL_TIME_START = "2024-01-01T00:00:00+00:00"


def period_range(period: str, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Start and end of a leaderboard period; the end is always ``now``.

    Weeks start on Sunday.  Raises ``ValueError`` for an unknown period.
    """
    now = now or utcnow()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "day":
        start = today
    elif period == "week":
        # Monday is 0 in Python, Sunday is 6
        start = today - timedelta(days=(today.weekday() + 1) % 7)
    elif period == "month":
        start = today.replace(day=1)
    elif period == "all_time":
        start = parse_timestamp(ALL_TIME_START)
    else:
        raise ValueError(f"Unknown leaderboard period: {period}")
    return start, now


def calculate_user_metrics(activities) -> List[Dict[str, Any]]:
    """Aggregate activities into per-user efficiency metrics."""
    stats: Dict[str, Dict[str, Any]] = {}
    for activity in activities:
        entry = stats.setdefault(
            activity.user_id,
            {"total_carbon": 0.0, "commits": 0, "lines_added": 0, "days": set()},
        )
        entry["total_carbon"] += activity.carbon_kg or 0.0
        if activity.type == "commit" and activity.commit is not None:
            entry["commits"] += 1
            entry["lines_added"] += activity.commit.additions
        entry["days"].add(activity.timestamp[:10])

    metrics = []
    for user_id, entry in stats.items():
        total = entry["total_carbon"]
        per_commit = total / entry["commits"] if entry["commits"] else 0.0
        per_line = total / entry["lines_added"] if entry["lines_added"] else 0.0
        metrics.append(
            {
                "user_id": user_id,
                "total_carbon_kg": round(total, 6),
                "commits_count": entry["commits"],
                "lines_added": entry["lines_added"],
                "active_days": len(entry["days"]),
                "carbon_per_commit": round(per_commit, 6),
                "carbon_per_line": round(per_line, 6),
                "efficiency_score": round(per_line or total, 6),
            }
        )
    return metrics


def rank_users(metrics: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Order by efficiency ascending; zero scores go last, highest carbon first."""
    scored = sorted(
        (m for m in metrics if m["efficiency_score"] != 0), key=lambda m: m["efficiency_score"]
    )
    unscored = sorted(
        (m for m in metrics if m["efficiency_score"] == 0),
        key=lambda m: m["total_carbon_kg"],
        reverse=True,
    )
    return scored + unscored


def is_stale(entry: Dict[str, Any], period: str, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    start, _ = period_range(period, now)
    if entry["period_start"] != to_iso(start):
        return True
    age = now - parse_timestamp(entry["updated_at"])
    return age.total_seconds() > settings.leaderboard_ttl


def percentile_for(rank: int, participants: int) -> int:
    if participants <= 1:
        return 100
    return round((participants - rank) / (participants - 1) * 100)


class LeaderboardService:
    """Service class for computing and reading leaderboards."""

    @classmethod
    async def calculate_leaderboard(cls, period: str) -> List[Dict[str, Any]]:
        """Compute the ranking for ``period`` without storing it."""
        start, end = period_range(period)
        activities = await ActivityService.list_activities_between(
            None, to_iso(start), to_iso(end + timedelta(microseconds=1))
        )
        ranked = rank_users(calculate_user_metrics(activities))
        usernames = await UserService.get_usernames([m["user_id"] for m in ranked])
        participants = len(ranked)
        return [
            {
                "user_id": metrics["user_id"],
                "username": usernames.get(metrics["user_id"], "Unknown User"),
                "period_type": period,
                "period_start": to_iso(start),
                "period_end": to_iso(end),
                "metrics": {k: v for k, v in metrics.items() if k != "user_id"},
                "rank": rank,
                "total_participants": participants,
                "percentile": percentile_for(rank, participants),
            }
            for rank, metrics in enumerate(ranked, start=1)
        ]

    @classmethod
    async def update_leaderboard(cls, period: str) -> List[Dict[str, Any]]:
        """Recompute, store and broadcast the leaderboard for ``period``."""
        entries = await cls.calculate_leaderboard(period)
        updated_at = to_iso()
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM leaderboard_entries WHERE period_type = ?", (period,))
            cursor.executemany(
                """
                INSERT INTO leaderboard_entries
                    (user_id, period_type, period_start, period_end, metrics, rank,
                     total_participants, percentile, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        entry["user_id"],
                        period,
                        entry["period_start"],
                        entry["period_end"],
                        json.dumps(entry["metrics"]),
                        entry["rank"],
                        entry["total_participants"],
                        entry["percentile"],
                        updated_at,
                    )
                    for entry in entries
                ],
            )
            conn.commit()
        finally:
            conn.close()
        for entry in entries:
            entry["updated_at"] = updated_at
        hub.broadcast_leaderboard_update(period, [entry["user_id"] for entry in entries])
        logger.info("Leaderboard %s updated with %d participants", period, len(entries))
        return entries

    @classmethod
    async def _stored_entries(cls, period: str) -> List[Dict[str, Any]]:
        conn = get_connection()
        try:
            rows = conn.execute(
                """
                SELECT user_id, period_type, period_start, period_end, metrics, rank,
                       total_participants, percentile, updated_at
                FROM leaderboard_entries WHERE period_type = ? ORDER BY rank
                """,
                (period,),
            ).fetchall()
        finally:
            conn.close()
        usernames = await UserService.get_usernames([row["user_id"] for row in rows])
        return [
            {
                "user_id": row["user_id"],
                "username": usernames.get(row["user_id"], "Unknown User"),
                "period_type": row["period_type"],
                "period_start": row["period_start"],
                "period_end": row["period_end"],
                "metrics": json.loads(row["metrics"]),
                "rank": row["rank"],
                "total_participants": row["total_participants"],
                "percentile": row["percentile"],
                "updated_at": row["updated_at"],
            }
            for row in rows
        ]

    @classmethod
    async def get_leaderboard(cls, period: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Stored entries for ``period``, recomputed when missing or stale.

        Entries are stale once the period has rolled over or when they
        are older than ``settings.leaderboard_ttl`` seconds.
        """
        if period not in PERIODS:
            raise ValueError(f"Unknown leaderboard period: {period}")
        entries = await cls._stored_entries(period)
        if not entries or is_stale(entries[0], period):
            entries = await cls.update_leaderboard(period)
        return entries[:limit] if limit else entries

    @classmethod
    async def get_user_position(cls, user_id: str, period: str) -> Optional[Dict[str, Any]]:
        for entry in await cls.get_leaderboard(period):
            if entry["user_id"] == user_id:
                return entry
        return None
