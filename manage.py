#!/usr/bin/env python3
"""
Administration commands for the EcoTrace database.

Usage:
    python manage.py migrate [--target N]
    python manage.py migration-status
    python manage.py refresh-egrid
    python manage.py update-leaderboards [--period day|week|month|all_time]
    python manage.py purge-audits [--retention-days N] [--max-records N]

The database location comes from ``DATABASE_URL`` (or ``--db``).
"""

import argparse
import asyncio
import json
import sys

from ecotrace_api.app.core.config import settings
from ecotrace_api.app.core.db import apply_migrations, get_migration_status, init_db
from ecotrace_api.app.core.logging_config import setup_logging
from ecotrace_api.app.services.audit_service import AuditService
from ecotrace_api.app.services.egrid_service import egrid_service
from ecotrace_api.app.services.leaderboard_service import PERIODS, LeaderboardService


def cmd_migrate(args) -> int:
    applied = apply_migrations(args.target)
    if applied:
        print(f"[+] Applied migrations: {', '.join(str(v) for v in applied)}")
    else:
        print("[=] Database is up to date")
    return 0


def cmd_migration_status(args) -> int:
    status = get_migration_status()
    print(json.dumps(status, indent=2, default=str))
    return 1 if status["checksum_mismatches"] else 0


def cmd_refresh_egrid(args) -> int:
    init_db()
    try:
        count = egrid_service.refresh()
    except RuntimeError as e:
        print(f"[!] eGRID refresh failed: {e}", file=sys.stderr)
        return 2
    print(f"[+] Stored {count} eGRID subregions")
    return 0


def cmd_update_leaderboards(args) -> int:
    init_db()
    periods = [args.period] if args.period else list(PERIODS)
    for period in periods:
        entries = asyncio.run(LeaderboardService.update_leaderboard(period))
        print(f"[+] {period}: {len(entries)} participants")
    return 0


def cmd_purge_audits(args) -> int:
    init_db()
    deleted = asyncio.run(AuditService.cleanup(args.retention_days, args.max_records))
    print(f"[+] Deleted {deleted} audit records")
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="EcoTrace administration commands.")
    ap.add_argument("--db", help="Path to SQLite DB file (overrides DATABASE_URL)")
    sub = ap.add_subparsers(dest="command", required=True)

    migrate = sub.add_parser("migrate", help="Apply pending migrations")
    migrate.add_argument("--target", type=int, help="Stop after this migration version")
    migrate.set_defaults(func=cmd_migrate)

    status = sub.add_parser("migration-status", help="Show applied and pending migrations")
    status.set_defaults(func=cmd_migration_status)

    refresh = sub.add_parser("refresh-egrid", help="Download EPA eGRID data into the database")
    refresh.set_defaults(func=cmd_refresh_egrid)

    leaderboards = sub.add_parser("update-leaderboards", help="Recompute stored leaderboards")
    leaderboards.add_argument("--period", choices=PERIODS, help="Only this period (default: all)")
    leaderboards.set_defaults(func=cmd_update_leaderboards)

    purge = sub.add_parser("purge-audits", help="Delete old calculation audit records")
    purge.add_argument("--retention-days", type=int, help=f"Default: {settings.audit_retention_days}")
    purge.add_argument("--max-records", type=int, help=f"Default: {settings.audit_max_records}")
    purge.set_defaults(func=cmd_purge_audits)
    return ap


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.db:
        settings.database_url = args.db
    setup_logging(settings.log_level, fmt=settings.log_format)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
