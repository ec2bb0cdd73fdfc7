"""
Simple configuration management.

The ``Settings`` dataclass reads configuration directly from environment
variables, with defaults for every field.  Values are computed when the
module is imported, so environment variables must be set beforehand.
Tests override individual attributes on the ``settings`` instance.
"""

import os
from dataclasses import dataclass


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


@dataclass
class Settings:
    """Application settings loaded from environment variables."""

    project_name: str = os.getenv("PROJECT_NAME", "EcoTrace API")
    api_version: str = os.getenv("API_VERSION", "2.0.0")
    environment: str = os.getenv("ENVIRONMENT", "development")
    debug: bool = _env_flag("DEBUG")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    # "text" or "json".  Production defaults to one JSON object per line.
    log_format: str = os.getenv(
        "LOG_FORMAT", "json" if os.getenv("ENVIRONMENT") == "production" else "text"
    )
    log_file: str = os.getenv("LOG_FILE", "")

    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "3001"))
    frontend_url: str = os.getenv("FRONTEND_URL", "http://localhost:3000")

    # Path to the SQLite database.  Relative paths are resolved against the
    # package root by ``core.db``.
    database_url: str = os.getenv("DATABASE_URL", "ecotrace.db")

    # Electricity Maps carbon intensity API.  Without a key the client
    # returns no data unless ``electricity_maps_mock`` is enabled.
    electricity_maps_api_key: str = os.getenv("ELECTRICITY_MAPS_API_KEY", "")
    electricity_maps_base_url: str = os.getenv(
        "ELECTRICITY_MAPS_BASE_URL", "https://api.electricitymap.org/v3"
    )
    electricity_maps_mock: bool = _env_flag("ELECTRICITY_MAPS_MOCK")
    electricity_maps_hourly_limit: int = int(os.getenv("ELECTRICITY_MAPS_HOURLY_LIMIT", "1000"))

    # EPA eGRID downloads, used by ``manage.py refresh-egrid``.
    epa_egrid_api_key: str = os.getenv("EPA_EGRID_API_KEY", "")
    epa_egrid_api_url: str = os.getenv(
        "EPA_EGRID_API_URL", "https://api.epa.gov/egrid/power-profiler/v1.0/subregions"
    )
    epa_egrid_csv_url: str = os.getenv(
        "EPA_EGRID_CSV_URL",
        "https://www.epa.gov/sites/default/files/2023-01/egrid2021_data.csv",
    )
    epa_egrid_zip_url: str = os.getenv(
        "EPA_EGRID_ZIP_URL",
        "https://www.epa.gov/sites/default/files/2023-01/zip_code_tool.csv",
    )
    external_timeout_seconds: float = float(os.getenv("EXTERNAL_TIMEOUT_SECONDS", "10"))

    cache_default_ttl: int = int(os.getenv("CACHE_DEFAULT_TTL", "300"))
    cache_max_size: int = int(os.getenv("CACHE_MAX_SIZE", "1000"))
    # Stored leaderboards older than this are recomputed on read.
    leaderboard_ttl: int = int(os.getenv("LEADERBOARD_TTL", "300"))

    # Calculations slower than this are logged as warnings and counted as
    # slow requests by the performance monitor.
    performance_target_ms: float = float(os.getenv("PERFORMANCE_TARGET_MS", "100"))

    audit_retention_days: int = int(os.getenv("AUDIT_RETENTION_DAYS", "365"))
    audit_max_records: int = int(os.getenv("AUDIT_MAX_RECORDS", "100000"))

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


# Instantiate settings once so other modules can import it without
# repeatedly reading environment variables.
settings = Settings()
