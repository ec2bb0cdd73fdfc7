import asyncio
import json

import manage
from ecotrace_api.app.core.db import get_connection
from ecotrace_api.app.services.activity_service import ActivityService
from ecotrace_api.app.services.egrid_service import egrid_service
from ecotrace_api.app.services.leaderboard_service import LeaderboardService
from tests.conftest import make_record


def test_migrate_reports_up_to_date(capsys):
    assert manage.main(["migrate"]) == 0
    assert "up to date" in capsys.readouterr().out


def test_migrate_new_database(tmp_path, capsys):
    path = tmp_path / "fresh.db"

    assert manage.main(["--db", str(path), "migrate", "--target", "1"]) == 0
    assert "Applied migrations: 1" in capsys.readouterr().out
    assert manage.main(["--db", str(path), "migration-status"]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["current_version"] == 1
    assert status["pending"]


def test_migration_status_flags_edited_migrations(capsys):
    conn = get_connection()
    try:
        conn.execute("UPDATE migrations SET checksum = 'edited' WHERE version = 1")
        conn.commit()
    finally:
        conn.close()

    assert manage.main(["migration-status"]) == 1


def test_refresh_egrid_failure(monkeypatch, capsys):
    def unavailable(session=None):
        raise RuntimeError("Unable to fetch EPA eGRID data: offline")

    monkeypatch.setattr(egrid_service, "refresh", unavailable)

    assert manage.main(["refresh-egrid"]) == 2
    assert "offline" in capsys.readouterr().err


def test_update_leaderboards(capsys):
    asyncio.run(ActivityService.create_activity(make_record("u1")))

    assert manage.main(["update-leaderboards", "--period", "all_time"]) == 0
    assert "all_time: 1 participants" in capsys.readouterr().out
    assert len(asyncio.run(LeaderboardService.get_leaderboard("all_time"))) == 1


def test_purge_audits(capsys):
    assert manage.main(["purge-audits", "--retention-days", "30"]) == 0
    assert "Deleted 0 audit records" in capsys.readouterr().out
