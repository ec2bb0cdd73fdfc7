"""
Dashboard aggregation service.

Builds the views shown on a developer's dashboard from their stored
activities: period totals compared with the previous period, activity
pages, summary statistics, trends with a simple linear-regression
forecast and the leaderboard.  Results are cached per user under
``dashboard:{user_id}:`` so that new or deleted activities can
invalidate them (see ``ActivityService``).
"""

import logging
import math
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ecotrace_api.app.core.cache import cache
from ecotrace_api.app.core.timeutils import parse_timestamp, to_iso, utcnow
from ecotrace_api.app.services.activity_service import ActivityService, dashboard_cache_prefix
from ecotrace_api.app.services.leaderboard_service import LeaderboardService, period_range

logger = logging.getLogger(__name__)

ACTIVITY_TYPES = ("commit", "pr", "ci_run", "deployment", "local_dev")
PERIOD_DAYS = {"daily": 1, "weekly": 7, "monthly": 30, "all_time": 365}
LEADERBOARD_PERIODS = {"daily": "day", "weekly": "week", "monthly": "month", "all_time": "all_time"}
MAX_PAGE_SIZE = 100

CARBON_TTL = 120
STATS_TTL = 300
TRENDS_TTL = 600


def calculate_period_ranges(
    period: str, now: Optional[datetime] = None
) -> Tuple[datetime, datetime, datetime, datetime]:
    """``(current_start, current_end, previous_start, previous_end)`` for a period.

    ``daily`` compares today with yesterday; the other periods compare
    the last N days with the N days before them.
    """
    if period not in PERIOD_DAYS:
        raise ValueError(f"Unknown period: {period}")
    now = now or utcnow()
    if period == "daily":
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return today, now, today - timedelta(days=1), today
    span = timedelta(days=PERIOD_DAYS[period])
    return now - span, now, now - 2 * span, now - span


def linear_trend(values: List[float]) -> Dict[str, Any]:
    """Least-squares slope over the value index, with R-squared as confidence."""
    n = len(values)
    if n < 2:
        return {"direction": "stable", "slope": 0.0, "confidence": 0.0}
    x_mean = (n - 1) / 2
    y_mean = sum(values) / n
    numerator = sum((i - x_mean) * (y - y_mean) for i, y in enumerate(values))
    denominator = sum((i - x_mean) ** 2 for i in range(n))
    slope = numerator / denominator if denominator else 0.0
    total_variation = sum((y - y_mean) ** 2 for y in values)
    explained = sum((slope * (i - x_mean)) ** 2 for i in range(n))
    confidence = explained / total_variation if total_variation else 0.0
    if abs(slope) < 0.001:
        direction = "stable"
    elif slope > 0:
        direction = "increasing"
    else:
        direction = "decreasing"
    return {"direction": direction, "slope": round(slope, 4), "confidence": round(confidence, 2)}


def predict(values: List[float], trend: Dict[str, Any]) -> Dict[str, float]:
    if not values:
        return {"next_week": 0.0, "next_month": 0.0}
    sign = {"increasing": 1, "decreasing": -1}.get(trend["direction"], 0)
    week = values[-1] * (1 + sign * 0.1 * trend["confidence"])
    month = sum(values) / len(values) * (1 + sign * 0.3 * trend["confidence"])
    return {"next_week": round(max(0.0, week), 6), "next_month": round(max(0.0, month), 6)}


def _efficiency(carbon_kg: float, count: int) -> float:
    if not count:
        return 100.0
    return round(max(0.0, min(100.0, 100 - carbon_kg / count * 1000)), 2)


def _daily_stats(activities) -> Dict[str, Dict[str, float]]:
    days: Dict[str, Dict[str, float]] = {}
    for activity in activities:
        day = days.setdefault(activity.timestamp[:10], {"carbon": 0.0, "count": 0})
        day["carbon"] += activity.carbon_kg
        day["count"] += 1
    return days


def streak_days(activities, today: Optional[datetime] = None) -> int:
    """Consecutive days with activity, counting back from today."""
    active = {activity.timestamp[:10] for activity in activities}
    day = (today or utcnow()).date()
    streak = 0
    while day.isoformat() in active:
        streak += 1
        day -= timedelta(days=1)
    return streak


class DashboardService:
    """Service class building dashboard views."""

    @classmethod
    async def get_user_carbon_data(cls, user_id: str, period: str = "weekly") -> Dict[str, Any]:
        cache_key = f"{dashboard_cache_prefix(user_id)}carbon:{period}"
        cached = cache.get(cache_key)
        if cached is not None:
            logger.debug("Dashboard carbon data for %s served from cache", user_id)
            return cached

        current_start, current_end, previous_start, previous_end = calculate_period_ranges(period)
        current = await ActivityService.list_activities_between(
            user_id, to_iso(current_start), to_iso(current_end + timedelta(microseconds=1))
        )
        previous = await ActivityService.list_activities_between(
            user_id, to_iso(previous_start), to_iso(previous_end)
        )
        current_total = sum(a.carbon_kg for a in current)
        previous_total = sum(a.carbon_kg for a in previous)
        if previous_total > 0:
            change = (current_total - previous_total) / previous_total * 100
        else:
            change = 100.0 if current_total > 0 else 0.0

        breakdown = {kind: 0.0 for kind in ACTIVITY_TYPES}
        confidence = {"high": 0, "medium": 0, "low": 0}
        for activity in current:
            breakdown[activity.type] += activity.carbon_kg
            confidence[activity.calculation_confidence] += 1
        recent = sorted(current, key=lambda a: a.timestamp, reverse=True)[:10]

        result = {
            "current_period": {
                "carbon_kg": round(current_total, 6),
                "activity_count": len(current),
                "period_start": to_iso(current_start),
                "period_end": to_iso(current_end),
            },
            "previous_period": {
                "carbon_kg": round(previous_total, 6),
                "activity_count": len(previous),
                "period_start": to_iso(previous_start),
                "period_end": to_iso(previous_end),
            },
            "change_percentage": round(change, 2),
            "breakdown": {kind: round(value, 6) for kind, value in breakdown.items()},
            "efficiency_score": _efficiency(current_total, len(current)),
            "confidence_distribution": confidence,
            "recent_activities": [a.model_dump() for a in recent],
        }
        cache.set(cache_key, result, ttl=CARBON_TTL)
        logger.info(
            "Dashboard carbon data calculated for %s (%s): %.6f kg, %+.1f%%",
            user_id,
            period,
            current_total,
            change,
        )
        return result

    @classmethod
    async def get_user_activities(
        cls,
        user_id: str,
        limit: int = 25,
        offset: int = 0,
        type: Optional[str] = None,
        since: Optional[str] = None,
    ) -> Dict[str, Any]:
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        activities, total = await ActivityService.list_activities(
            user_id, limit=limit, offset=offset, type=type, since=since
        )
        return {
            "activities": [a.model_dump() for a in activities],
            "total": total,
            "has_more": offset + len(activities) < total,
        }

    @classmethod
    async def get_user_stats(cls, user_id: str, period: str = "weekly") -> Dict[str, Any]:
        cache_key = f"{dashboard_cache_prefix(user_id)}stats:{period}"
        cached = cache.get(cache_key)
        if cached is not None:
            return cached

        start, end, _, _ = calculate_period_ranges(period)
        activities = await ActivityService.list_activities_between(
            user_id, to_iso(start), to_iso(end + timedelta(microseconds=1))
        )
        total_carbon = sum(a.carbon_kg for a in activities)
        counts = {kind: 0 for kind in ACTIVITY_TYPES}
        repositories = set()
        for activity in activities:
            counts[activity.type] += 1
            if activity.repository is not None:
                repositories.add(activity.repository.full_name)

        daily = _daily_stats(activities)
        most_active = max(daily, key=lambda d: daily[d]["count"], default="N/A")
        most_efficient = min(daily, key=lambda d: daily[d]["carbon"] / daily[d]["count"], default="N/A")

        now = utcnow()
        recent = await ActivityService.list_activities_between(
            user_id, to_iso(now - timedelta(days=366)), to_iso(now + timedelta(microseconds=1))
        )
        position = await LeaderboardService.get_user_position(user_id, LEADERBOARD_PERIODS[period])

        result = {
            "total_carbon_kg": round(total_carbon, 6),
            "total_activities": len(activities),
            "average_carbon_per_activity": round(total_carbon / len(activities), 6) if activities else 0.0,
            "activity_counts": counts,
            "repositories_count": len(repositories),
            "most_active_day": most_active,
            "most_efficient_day": most_efficient,
            "streak_days": streak_days(recent, now),
            "rank": position["rank"] if position else None,
            "percentile": position["percentile"] if position else None,
            "period_days": max(1, math.ceil((end - start).total_seconds() / 86400)),
        }
        cache.set(cache_key, result, ttl=STATS_TTL)
        return result

    @staticmethod
    def _trend_slots(granularity: str, days: int, now: datetime) -> "OrderedDict[str, List[Any]]":
        slots: "OrderedDict[str, List[Any]]" = OrderedDict()
        if granularity == "hourly":
            for hours_ago in range(23, -1, -1):
                slots[(now - timedelta(hours=hours_ago)).strftime("%Y-%m-%dT%H:00")] = []
        elif granularity == "weekly":
            for week in range((days - 1) // 7, -1, -1):
                slots[f"week-{week}"] = []
        else:
            for days_ago in range(days - 1, -1, -1):
                slots[(now - timedelta(days=days_ago)).strftime("%Y-%m-%d")] = []
        return slots

    @staticmethod
    def _slot_key(granularity: str, timestamp: datetime, now: datetime) -> str:
        if granularity == "hourly":
            return timestamp.strftime("%Y-%m-%dT%H:00")
        if granularity == "weekly":
            return f"week-{(now - timestamp).days // 7}"
        return timestamp.strftime("%Y-%m-%d")

    @classmethod
    async def get_user_trends(
        cls, user_id: str, period: str = "weekly", granularity: str = "daily", days: int = 30
    ) -> Dict[str, Any]:
        if granularity not in ("hourly", "daily", "weekly"):
            raise ValueError(f"Unknown granularity: {granularity}")
        days = max(1, days)
        cache_key = f"{dashboard_cache_prefix(user_id)}trends:{period}:{granularity}:{days}"
        cached = cache.get(cache_key)
        if cached is not None:
            return cached

        now = utcnow()
        activities = await ActivityService.list_activities_between(
            user_id, to_iso(now - timedelta(days=days)), to_iso(now + timedelta(microseconds=1))
        )
        slots = cls._trend_slots(granularity, days, now)
        for activity in activities:
            key = cls._slot_key(granularity, parse_timestamp(activity.timestamp), now)
            if key in slots:
                slots[key].append(activity)

        data_points = []
        for key, members in slots.items():
            carbon = sum(a.carbon_kg for a in members)
            data_points.append(
                {
                    "date": key,
                    "carbon_kg": round(carbon, 6),
                    "activity_count": len(members),
                    "efficiency_score": _efficiency(carbon, len(members)),
                }
            )
        values = [point["carbon_kg"] for point in data_points]
        trend = linear_trend(values)
        result = {
            "data_points": data_points,
            "trend_analysis": trend,
            "predictions": predict(values, trend),
            "period": period,
            "granularity": granularity,
            "days": days,
        }
        cache.set(cache_key, result, ttl=TRENDS_TTL)
        logger.info(
            "Dashboard trends calculated for %s: %d points, %s", user_id, len(data_points), trend["direction"]
        )
        return result

    @staticmethod
    def _period_info(leaderboard_period: str) -> Dict[str, Any]:
        start, now = period_range(leaderboard_period)
        if leaderboard_period == "day":
            end = start + timedelta(days=1)
        elif leaderboard_period == "week":
            end = start + timedelta(days=7)
        elif leaderboard_period == "month":
            end = (start + timedelta(days=32)).replace(day=1)
        else:
            end = now
        return {
            "start": to_iso(start),
            "end": to_iso(end),
            "days_remaining": max(0, math.ceil((end - now).total_seconds() / 86400)),
        }

    @classmethod
    async def get_leaderboard_data(
        cls, period: str = "weekly", limit: int = 50, user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        if period not in LEADERBOARD_PERIODS:
            raise ValueError(f"Unknown period: {period}")
        leaderboard_period = LEADERBOARD_PERIODS[period]
        entries = await LeaderboardService.get_leaderboard(leaderboard_period)
        user_position = None
        if user_id:
            user_position = next((e for e in entries if e["user_id"] == user_id), None)
        return {
            "entries": entries[:limit],
            "user_position": user_position,
            "total_participants": entries[0]["total_participants"] if entries else 0,
            "period_info": cls._period_info(leaderboard_period),
        }
