import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from ecotrace_api.app.core.config import settings
from ecotrace_api.app.core.db import get_connection
from ecotrace_api.app.core.realtime import hub
from ecotrace_api.app.core.timeutils import to_iso
from ecotrace_api.app.schemas.activity import CommitInfo
from ecotrace_api.app.schemas.user import UserCreate
from ecotrace_api.app.services.activity_service import ActivityService
from ecotrace_api.app.services.leaderboard_service import (
    ALL_TIME_START,
    LeaderboardService,
    is_stale,
    percentile_for,
    period_range,
    rank_users,
)
from ecotrace_api.app.services.user_service import UserService
from tests.conftest import make_record

ALL_TIME_START_ISO = to_iso(ALL_TIME_START)


def commit(user_id, additions, carbon_kg):
    return make_record(
        user_id,
        "commit",
        carbon_kg=carbon_kg,
        commit=CommitInfo(sha="abc", additions=additions),
    )


@pytest.fixture
def participants():
    for user_id, name in [("u1", "amy"), ("u2", "bob"), ("u3", "cat")]:
        asyncio.run(UserService.create_user(UserCreate(id=user_id, username=name)))
    asyncio.run(ActivityService.create_activity(commit("u1", 100, 0.01)))
    asyncio.run(ActivityService.create_activity(commit("u2", 10, 0.01)))
    asyncio.run(ActivityService.create_activity(make_record("u3", "local_dev", carbon_kg=0.02)))
    asyncio.run(ActivityService.create_activity(make_record("u4", "local_dev", carbon_kg=0.0)))


def test_period_range_week_starts_on_sunday():
    wednesday = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    start, end = period_range("week", wednesday)

    assert start == datetime(2025, 1, 12, tzinfo=timezone.utc)
    assert end == wednesday
    assert period_range("month", wednesday)[0].day == 1
    assert period_range("all_time", wednesday)[0].year == 2024
    with pytest.raises(ValueError):
        period_range("fortnight", wednesday)


def test_ranking_by_efficiency(participants):
    entries = asyncio.run(LeaderboardService.calculate_leaderboard("all_time"))

    assert [e["user_id"] for e in entries] == ["u1", "u2", "u3", "u4"]
    assert [e["percentile"] for e in entries] == [100, 67, 33, 0]
    assert entries[0]["username"] == "amy"
    assert entries[3]["username"] == "Unknown User"
    assert entries[0]["metrics"]["carbon_per_line"] == pytest.approx(0.0001)
    assert entries[2]["metrics"]["efficiency_score"] == pytest.approx(0.02)
    assert all(e["total_participants"] == 4 for e in entries)


def test_update_stores_and_broadcasts(participants):
    sub = hub.subscribe(["leaderboard.all_time"])

    asyncio.run(LeaderboardService.update_leaderboard("all_time"))
    stored = asyncio.run(LeaderboardService.get_leaderboard("all_time", limit=2))

    assert [e["rank"] for e in stored] == [1, 2]
    assert stored[0]["updated_at"] is not None
    event = sub.queue.get_nowait()
    assert event["type"] == "leaderboard_updated"
    assert event["data"]["updated_users"] == ["u1", "u2", "u3", "u4"]


def test_get_leaderboard_computes_when_empty(participants):
    entries = asyncio.run(LeaderboardService.get_leaderboard("all_time"))

    assert len(entries) == 4
    position = asyncio.run(LeaderboardService.get_user_position("u2", "all_time"))
    assert position["rank"] == 2
    assert asyncio.run(LeaderboardService.get_user_position("nobody", "all_time")) is None
    with pytest.raises(ValueError):
        asyncio.run(LeaderboardService.get_leaderboard("yearly"))


def test_zero_scores_go_last_by_carbon():
    metrics = [
        {"user_id": "a", "efficiency_score": 0, "total_carbon_kg": 0.0},
        {"user_id": "b", "efficiency_score": 0.5, "total_carbon_kg": 0.5},
        {"user_id": "c", "efficiency_score": 0, "total_carbon_kg": 0.0},
    ]

    assert [m["user_id"] for m in rank_users(metrics)] == ["b", "a", "c"]


def test_percentile_for():
    assert percentile_for(1, 1) == 100
    assert percentile_for(1, 3) == 100
    assert percentile_for(3, 3) == 0


def tamper_stored(period, **columns):
    assignments = ", ".join(f"{name} = ?" for name in columns)
    conn = get_connection()
    try:
        conn.execute(
            f"UPDATE leaderboard_entries SET {assignments} WHERE period_type = ?",
            (*columns.values(), period),
        )
        conn.commit()
    finally:
        conn.close()


def test_fresh_rankings_are_served_from_storage(participants):
    asyncio.run(LeaderboardService.update_leaderboard("all_time"))
    tamper_stored("all_time", total_participants=99)

    entries = asyncio.run(LeaderboardService.get_leaderboard("all_time"))

    assert entries[0]["total_participants"] == 99


def test_rankings_from_a_previous_period_are_recomputed(participants):
    asyncio.run(LeaderboardService.update_leaderboard("day"))
    tamper_stored("day", period_start="2020-01-01T00:00:00.000000+00:00", total_participants=99)

    entries = asyncio.run(LeaderboardService.get_leaderboard("day"))

    assert entries[0]["total_participants"] == 4
    assert entries[0]["period_start"] == to_iso(period_range("day")[0])


def test_expired_rankings_are_recomputed(participants, monkeypatch):
    monkeypatch.setattr(settings, "leaderboard_ttl", 60)
    asyncio.run(LeaderboardService.update_leaderboard("all_time"))
    tamper_stored("all_time", updated_at="2020-01-01T00:00:00.000000+00:00", total_participants=99)

    entries = asyncio.run(LeaderboardService.get_leaderboard("all_time"))

    assert entries[0]["total_participants"] == 4


def test_activity_changes_drop_stored_rankings(participants):
    asyncio.run(LeaderboardService.update_leaderboard("all_time"))

    created = asyncio.run(ActivityService.create_activity(commit("u5", 1000, 0.01)))
    after_create = asyncio.run(LeaderboardService.get_leaderboard("all_time"))
    asyncio.run(ActivityService.delete_activity(created.id))
    after_delete = asyncio.run(LeaderboardService.get_leaderboard("all_time"))

    assert after_create[0]["user_id"] == "u5"
    assert after_create[0]["total_participants"] == 5
    assert "u5" not in [e["user_id"] for e in after_delete]
    assert after_delete[0]["total_participants"] == 4


def test_is_stale():
    now = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
    entry = {"period_start": to_iso(period_range("day", now)[0]), "updated_at": to_iso(now)}

    assert is_stale(entry, "day", now) is False
    assert is_stale(entry, "day", now + timedelta(days=1)) is True
    assert is_stale(entry, "all_time", now) is True
    assert is_stale({**entry, "period_start": ALL_TIME_START_ISO}, "all_time", now) is False
    later = now + timedelta(seconds=settings.leaderboard_ttl + 1)
    assert is_stale({**entry, "period_start": ALL_TIME_START_ISO}, "all_time", later) is True
