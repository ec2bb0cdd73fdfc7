"""
SQLite database integration and migration runner.

This module provides ``get_connection`` and ``get_cursor`` for the
service layer, and a small migration system that is applied on
application start (``init_db``) or from ``manage.py``.

Migrations are declared in ``MIGRATIONS`` in ascending version order.
Each applied migration is recorded in the ``migrations`` table together
with a checksum of its SQL and the time it took to run, so that
``get_migration_status`` can report pending migrations and migrations
whose SQL was edited after being applied.
"""

import hashlib
import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    """A single schema migration."""

    version: int
    name: str
    description: str
    sql: str

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.sql.encode("utf-8")).hexdigest()


MIGRATIONS: List[Migration] = [
    Migration(
        1,
        "initial_schema",
        "Users, activities, carbon calculations, leaderboards and emission factors",
        """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            username TEXT NOT NULL,
            email TEXT,
            github_id TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
        CREATE UNIQUE INDEX IF NOT EXISTS idx_users_username ON users(username);

        CREATE TABLE IF NOT EXISTS activities (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            type TEXT NOT NULL,
            repository TEXT,
            commit_data TEXT,
            ci_data TEXT,
            local_data TEXT,
            carbon_kg REAL NOT NULL DEFAULT 0,
            calculation_confidence TEXT NOT NULL DEFAULT 'medium',
            timestamp TEXT NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
        CREATE INDEX IF NOT EXISTS idx_activities_user_time ON activities(user_id, timestamp);
        CREATE INDEX IF NOT EXISTS idx_activities_type ON activities(type);

        CREATE TABLE IF NOT EXISTS carbon_calculations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            activity_id TEXT NOT NULL,
            request_id TEXT,
            carbon_kg REAL NOT NULL,
            confidence TEXT NOT NULL,
            methodology_version TEXT,
            calculated_at TEXT NOT NULL,
            FOREIGN KEY(activity_id) REFERENCES activities(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS leaderboard_entries (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            period_type TEXT NOT NULL,
            period_start TEXT NOT NULL,
            period_end TEXT NOT NULL,
            metrics TEXT NOT NULL,
            rank INTEGER NOT NULL,
            total_participants INTEGER NOT NULL,
            percentile INTEGER NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
        CREATE INDEX IF NOT EXISTS idx_leaderboard_period ON leaderboard_entries(period_type, rank);

        CREATE TABLE IF NOT EXISTS emission_factors (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            region TEXT NOT NULL,
            source TEXT NOT NULL,
            value REAL NOT NULL,
            unit TEXT NOT NULL,
            valid_from TEXT,
            valid_until TEXT,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
        """,
    ),
    Migration(
        2,
        "calculation_audit",
        "Calculation audit records and methodology versions",
        """
        CREATE TABLE IF NOT EXISTS calculation_audits (
            id TEXT PRIMARY KEY,
            request_id TEXT NOT NULL,
            activity_type TEXT NOT NULL,
            user_id TEXT,
            carbon_kg REAL NOT NULL,
            confidence TEXT NOT NULL,
            is_valid INTEGER,
            validation_confidence REAL,
            total_time_ms REAL NOT NULL DEFAULT 0,
            activity_data TEXT NOT NULL,
            calculation_result TEXT NOT NULL,
            validation_results TEXT,
            performance_metrics TEXT,
            system_info TEXT,
            user_context TEXT,
            created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_audits_request ON calculation_audits(request_id);
        CREATE INDEX IF NOT EXISTS idx_audits_created ON calculation_audits(created_at);

        CREATE TABLE IF NOT EXISTS methodology_versions (
            version TEXT PRIMARY KEY,
            methodology TEXT NOT NULL,
            changes TEXT,
            created_by TEXT NOT NULL,
            created_at TEXT NOT NULL,
            deprecated INTEGER NOT NULL DEFAULT 0,
            superseded_by TEXT
        );
        """,
    ),
    Migration(
        3,
        "egrid_reference_data",
        "EPA eGRID subregion emission rates and postal code prefixes",
        """
        CREATE TABLE IF NOT EXISTS egrid_subregions (
            subregion TEXT PRIMARY KEY,
            name TEXT,
            state TEXT,
            emission_rate REAL NOT NULL,
            unit TEXT NOT NULL DEFAULT 'kg_CO2_per_MWh',
            year INTEGER NOT NULL,
            quarter INTEGER NOT NULL DEFAULT 4,
            source TEXT NOT NULL,
            last_updated TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS egrid_postal_codes (
            prefix TEXT PRIMARY KEY,
            subregion TEXT NOT NULL,
            state TEXT
        );
        """,
    ),
]


def get_database_path() -> str:
    """Compute the path to the SQLite database file.

    Absolute paths from ``settings.database_url`` are used directly,
    relative ones are resolved against the package root.
    """
    db_url = settings.database_url
    if os.path.isabs(db_url):
        return db_url
    base_dir = Path(__file__).resolve().parent.parent.parent  # ecotrace_api/
    return str((base_dir / db_url).resolve())


def get_connection() -> sqlite3.Connection:
    """Create and return a new SQLite connection.

    Rows are returned as ``sqlite3.Row`` so columns can be accessed by
    name.  Timestamps are stored as ISO strings and returned unparsed.
    """
    conn = sqlite3.connect(get_database_path())
    conn.row_factory = sqlite3.Row
    # Foreign keys are off by default in SQLite and must be enabled per connection.
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def get_cursor() -> Iterator[sqlite3.Cursor]:
    """Context manager that yields a cursor and closes the connection on exit."""
    conn = get_connection()
    try:
        yield conn.cursor()
        conn.commit()
    finally:
        conn.close()


def _ensure_migrations_table(cursor: sqlite3.Cursor) -> None:
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS migrations (
            version INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT,
            checksum TEXT NOT NULL,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            execution_time_ms REAL
        )
        """
    )


def _current_version(cursor: sqlite3.Cursor) -> int:
    row = cursor.execute("SELECT MAX(version) AS version FROM migrations").fetchone()
    return row["version"] if row and row["version"] is not None else 0


def apply_migrations(target_version: Optional[int] = None) -> List[int]:
    """Apply pending migrations up to ``target_version`` (all if ``None``).

    Returns the list of versions applied by this call.  A failing
    migration is logged and re-raised; migrations applied before it in
    the same call stay recorded.
    """
    applied: List[int] = []
    with get_cursor() as cursor:
        _ensure_migrations_table(cursor)
        current_version = _current_version(cursor)
        for migration in MIGRATIONS:
            if migration.version <= current_version:
                continue
            if target_version is not None and migration.version > target_version:
                break
            started = time.perf_counter()
            try:
                cursor.executescript(migration.sql)
            except sqlite3.Error:
                logger.exception(
                    "Migration %s (%s) failed", migration.version, migration.name
                )
                raise
            elapsed_ms = (time.perf_counter() - started) * 1000
            cursor.execute(
                "INSERT INTO migrations (version, name, description, checksum, execution_time_ms) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    migration.version,
                    migration.name,
                    migration.description,
                    migration.checksum,
                    round(elapsed_ms, 3),
                ),
            )
            # executescript() commits implicitly; record each step as we go.
            cursor.connection.commit()
            logger.info(
                "Applied migration %s (%s) in %.1fms",
                migration.version,
                migration.name,
                elapsed_ms,
            )
            applied.append(migration.version)
    return applied


def get_migration_status() -> Dict[str, Any]:
    """Describe applied and pending migrations.

    Returns a dictionary with ``current_version``, ``latest_version``,
    ``applied`` (rows from the ``migrations`` table), ``pending``
    (versions not yet applied) and ``checksum_mismatches`` (applied
    versions whose SQL has changed since).
    """
    known = {m.version: m for m in MIGRATIONS}
    with get_cursor() as cursor:
        _ensure_migrations_table(cursor)
        rows = cursor.execute(
            "SELECT version, name, description, checksum, applied_at, execution_time_ms "
            "FROM migrations ORDER BY version"
        ).fetchall()
    applied = [dict(row) for row in rows]
    applied_versions = {row["version"] for row in applied}
    mismatches = [
        row["version"]
        for row in applied
        if row["version"] in known and known[row["version"]].checksum != row["checksum"]
    ]
    if mismatches:
        logger.warning("Migrations changed after being applied: %s", mismatches)
    return {
        "current_version": max(applied_versions) if applied_versions else 0,
        "latest_version": MIGRATIONS[-1].version if MIGRATIONS else 0,
        "applied": applied,
        "pending": [m.version for m in MIGRATIONS if m.version not in applied_versions],
        "checksum_mismatches": mismatches,
    }


def init_db() -> None:
    """Initialise the database and apply all pending migrations."""
    applied = apply_migrations()
    if applied:
        logger.info("Database initialised at %s (applied %s)", get_database_path(), applied)
