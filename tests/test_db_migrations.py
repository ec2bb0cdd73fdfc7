from ecotrace_api.app.core.config import settings
from ecotrace_api.app.core.db import (
    MIGRATIONS,
    apply_migrations,
    get_connection,
    get_cursor,
    get_migration_status,
)


def _tables():
    conn = get_connection()
    try:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    finally:
        conn.close()
    return {row["name"] for row in rows}


def test_init_db_creates_every_table():
    tables = _tables()
    for name in (
        "users",
        "activities",
        "carbon_calculations",
        "leaderboard_entries",
        "emission_factors",
        "calculation_audits",
        "methodology_versions",
        "egrid_subregions",
        "egrid_postal_codes",
        "migrations",
    ):
        assert name in tables


def test_applied_migrations_are_recorded_with_checksums():
    status = get_migration_status()

    assert status["current_version"] == MIGRATIONS[-1].version
    assert status["pending"] == []
    assert status["checksum_mismatches"] == []
    assert [row["checksum"] for row in status["applied"]] == [m.checksum for m in MIGRATIONS]


def test_apply_migrations_is_idempotent():
    assert apply_migrations() == []


def test_target_version_stops_early(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "database_url", str(tmp_path / "partial.db"))

    assert apply_migrations(target_version=1) == [1]
    status = get_migration_status()
    assert status["current_version"] == 1
    assert status["pending"] == [2, 3]
    assert apply_migrations() == [2, 3]


def test_checksum_mismatch_is_reported():
    with get_cursor() as cursor:
        cursor.execute("UPDATE migrations SET checksum = 'changed' WHERE version = 2")

    assert get_migration_status()["checksum_mismatches"] == [2]
