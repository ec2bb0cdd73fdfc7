"""
EPA eGRID emission factors.

The EPA publishes average CO2e output rates for each eGRID subregion,
together with a ZIP code tool that maps postal codes to subregions.
``EGridService`` answers "what is the grid emission factor for this US
postal code" from the first three digits of the code.

Reference data lives in the ``egrid_subregions`` and
``egrid_postal_codes`` tables, populated by ``refresh`` (run through
``manage.py refresh-egrid``).  Until a refresh has been made, a small
built-in table covering California, New York City and Texas is used.

Rates are stored in kg CO2e per MWh.  EPA publishes them in lb/MWh, so
downloaded values are converted with ``LB_TO_KG``.
"""

import csv
import io
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import requests

from ecotrace_api.app.core.cache import cache
from ecotrace_api.app.core.config import settings
from ecotrace_api.app.core.db import get_connection
from ecotrace_api.app.schemas.calculation import DataSource, DataSourceCoverage, EPAGridData

logger = logging.getLogger(__name__)

LB_TO_KG = 0.453592
NEAREST_PREFIX_MAX_DISTANCE = 100
MAX_DATA_AGE_DAYS = 120
USER_AGENT = "EcoTrace-Carbon-Calculator/1.0"

EXPECTED_SUBREGIONS = [
    "CAMX", "NYCW", "ERCT", "NYUP", "NEWE", "RFCE", "SRSO", "FRCC",
    "SERC", "RFCM", "RFCW", "SRMW", "SRMV", "SRCE", "SPNO", "SPSO",
    "MROW", "MROE", "NWPP", "RMPA", "AZNM", "HIMS", "AKGD", "AKMS",
]

# subregion -> (state, kg CO2e/MWh)
FALLBACK_SUBREGIONS = {
    "CAMX": ("CA", 244.73),
    "NYCW": ("NY", 285.45),
    "ERCT": ("TX", 407.89),
}
FALLBACK_YEAR = 2022
FALLBACK_SOURCE = "EPA_eGRID_2022"


def _fallback_prefixes() -> Dict[str, Tuple[str, str]]:
    prefixes: Dict[str, Tuple[str, str]] = {}
    for code in range(900, 962):
        if code not in (909, 929):
            prefixes[str(code)] = ("CAMX", "CA")
    for code in range(100, 120):
        prefixes[str(code)] = ("NYCW", "NY")
    for code in range(750, 800):
        if code != 769:
            prefixes[str(code)] = ("ERCT", "TX")
    return prefixes


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class EGridService:
    """Postal code to eGRID subregion emission factor lookups."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subregions: Dict[str, EPAGridData] = {}
        self._prefixes: Dict[str, Tuple[str, str]] = {}
        self._loaded = False
        self.last_updated = _now()
        self.data_origin = "fallback"

    # Loading -----------------------------------------------------------

    def reset(self) -> None:
        """Forget loaded data; the next lookup reloads it."""
        with self._lock:
            self._subregions = {}
            self._prefixes = {}
            self._loaded = False

    def _load_fallback(self) -> None:
        self.last_updated = _now()
        self._subregions = {
            name: EPAGridData(
                subregion=name,
                state=state,
                emission_rate=rate,
                year=FALLBACK_YEAR,
                quarter=4,
                last_updated=self.last_updated,
                source=FALLBACK_SOURCE,
            )
            for name, (state, rate) in FALLBACK_SUBREGIONS.items()
        }
        self._prefixes = _fallback_prefixes()
        self.data_origin = "fallback"
        logger.info(
            "EPA eGRID fallback data loaded (%d subregions, %d postal prefixes)",
            len(self._subregions),
            len(self._prefixes),
        )

    def _load_from_db(self) -> bool:
        conn = get_connection()
        try:
            cursor = conn.cursor()
            rows = cursor.execute(
                "SELECT subregion, name, state, emission_rate, unit, year, quarter, source, last_updated "
                "FROM egrid_subregions"
            ).fetchall()
            if not rows:
                return False
            prefixes = cursor.execute(
                "SELECT prefix, subregion, state FROM egrid_postal_codes"
            ).fetchall()
        finally:
            conn.close()
        self._subregions = {row["subregion"]: EPAGridData(**dict(row)) for row in rows}
        self._prefixes = {row["prefix"]: (row["subregion"], row["state"] or "") for row in prefixes}
        if not self._prefixes:
            self._prefixes = _fallback_prefixes()
        self.last_updated = max(row["last_updated"] for row in rows)
        self.data_origin = "database"
        logger.info("EPA eGRID data loaded from database (%d subregions)", len(self._subregions))
        return True

    def ensure_loaded(self) -> None:
        with self._lock:
            if self._loaded:
                return
            try:
                loaded = self._load_from_db()
            except sqlite3.OperationalError as exc:
                logger.warning("eGRID tables unavailable, using built-in data: %s", exc)
                loaded = False
            if not loaded:
                self._load_fallback()
            self._loaded = True

    # Lookups -----------------------------------------------------------

    def _find_mapping(self, prefix: str) -> Optional[Tuple[str, str]]:
        mapping = self._prefixes.get(prefix)
        if mapping:
            return mapping
        target = int(prefix)
        nearest = None
        smallest = None
        for code, candidate in self._prefixes.items():
            distance = abs(int(code) - target)
            if smallest is None or distance < smallest:
                smallest = distance
                nearest = candidate
        if nearest is not None and smallest <= NEAREST_PREFIX_MAX_DISTANCE:
            logger.info("Using nearest postal prefix for %s (distance %d)", prefix, smallest)
            return nearest
        return None

    def get_emission_factor(self, postal_code: str) -> Optional[EPAGridData]:
        """Return the grid data for a US postal code, or ``None``.

        The first three digits select the subregion.  Unknown prefixes
        fall back to the nearest known prefix within 100.
        """
        if not postal_code:
            return None
        prefix = postal_code.strip()[:3]
        if len(prefix) < 3 or not prefix.isdigit():
            logger.warning("Invalid postal code for eGRID lookup: %r", postal_code)
            return None
        cache_key = f"egrid:postal:{prefix}"
        cached = cache.get(cache_key)
        if cached is not None:
            return cached
        self.ensure_loaded()
        mapping = self._find_mapping(prefix)
        if mapping is None:
            logger.warning("No eGRID mapping found for postal prefix %s", prefix)
            return None
        subregion, _ = mapping
        data = self._subregions.get(subregion)
        if data is None:
            logger.warning("No eGRID emission factor for subregion %s", subregion)
            return None
        enriched = data.model_copy(
            update={"postal_codes": self.get_postal_codes_for_subregion(subregion)}
        )
        cache.set(cache_key, enriched, ttl=24 * 3600)
        return enriched

    def get_subregion_data(self, subregion: str) -> Optional[EPAGridData]:
        self.ensure_loaded()
        return self._subregions.get(subregion.upper())

    def get_postal_codes_for_subregion(self, subregion: str) -> List[str]:
        self.ensure_loaded()
        codes = sorted(code for code, (name, _) in self._prefixes.items() if name == subregion)
        return [f"{code}00" for code in codes[:10]]

    def get_all_subregions(self) -> List[str]:
        self.ensure_loaded()
        return sorted(self._subregions)

    def get_data_source_info(self) -> DataSource:
        self.ensure_loaded()
        return DataSource(
            name="EPA eGRID",
            type="EPA_eGRID",
            last_updated=self.last_updated,
            freshness="quarterly",
            reliability=0.95,
            coverage=DataSourceCoverage(
                geographic=["US"],
                temporal="Annual averages, updated quarterly",
                activities=["electricity", "cloud_compute"],
            ),
        )

    # Refresh -----------------------------------------------------------

    def _fetch_api(self, session: requests.Session) -> List[Dict[str, Any]]:
        response = session.get(
            settings.epa_egrid_api_url,
            headers={
                "X-API-KEY": settings.epa_egrid_api_key,
                "User-Agent": USER_AGENT,
                "Accept": "application/json",
            },
            timeout=30,
        )
        response.raise_for_status()
        results = response.json().get("results") or []
        return [
            {
                "subregion": entry["egrid_subrgn_acronym"],
                "name": entry.get("egrid_subrgn_name"),
                "state": entry.get("state_abbreviation") or "",
                "rate_lb": float(entry["egrid_subrgn_co2_rate_lb_mwh"]),
                "year": int(entry.get("data_year") or FALLBACK_YEAR),
                "quarter": int(entry.get("quarter") or 4),
            }
            for entry in results
        ]

    def _fetch_csv(self, session: requests.Session) -> List[Dict[str, Any]]:
        response = session.get(settings.epa_egrid_csv_url, headers={"User-Agent": USER_AGENT}, timeout=60)
        response.raise_for_status()
        rate_column = "eGRID subregion CO2 equivalent total output emission rate (lb/MWh)"
        rows = []
        for row in csv.DictReader(io.StringIO(response.text)):
            acronym = (row.get("eGRID subregion acronym") or "").strip()
            rate = (row.get(rate_column) or "").strip()
            if not acronym or not rate:
                continue
            rows.append(
                {
                    "subregion": acronym,
                    "name": (row.get("eGRID subregion name") or "").strip(),
                    "state": (row.get("State abbreviation") or "").strip(),
                    "rate_lb": float(rate.replace(",", "")),
                    "year": int(row.get("Data year") or 2021),
                    "quarter": 4,
                }
            )
        logger.info("EPA eGRID CSV parsed (%d rows)", len(rows))
        return rows

    def _fetch_postal_prefixes(self, session: requests.Session) -> Dict[str, Tuple[str, str]]:
        try:
            response = session.get(settings.epa_egrid_zip_url, headers={"User-Agent": USER_AGENT}, timeout=60)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("EPA ZIP code tool download failed, using built-in prefixes: %s", exc)
            return _fallback_prefixes()
        prefixes: Dict[str, Tuple[str, str]] = {}
        for row in csv.DictReader(io.StringIO(response.text)):
            zip_code = (row.get("ZIP") or "").strip()
            subregion = (row.get("eGRID subregion acronym") or "").strip()
            if len(zip_code) >= 3 and subregion:
                prefixes.setdefault(zip_code[:3], (subregion, (row.get("State abbreviation") or "").strip()))
        return prefixes or _fallback_prefixes()

    def refresh(self, session: Optional[requests.Session] = None) -> int:
        """Download current eGRID data and store it in the database.

        Uses the EPA API when ``EPA_EGRID_API_KEY`` is configured and the
        published CSV otherwise (or when the API fails).  Returns the
        number of subregions stored.

        Raises
        ------
        RuntimeError
            If no source produced any subregion data.
        """
        session = session or requests.Session()
        rows: List[Dict[str, Any]] = []
        if settings.epa_egrid_api_key:
            try:
                rows = self._fetch_api(session)
            except (requests.RequestException, KeyError, ValueError) as exc:
                logger.warning("EPA eGRID API unavailable, downloading CSV instead: %s", exc)
        if not rows:
            try:
                rows = self._fetch_csv(session)
            except requests.RequestException as exc:
                raise RuntimeError(f"Unable to fetch EPA eGRID data: {exc}") from exc
        if not rows:
            raise RuntimeError("EPA eGRID download contained no subregion rates")
        prefixes = self._fetch_postal_prefixes(session)

        updated_at = _now()
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM egrid_subregions")
            cursor.executemany(
                "INSERT OR REPLACE INTO egrid_subregions "
                "(subregion, name, state, emission_rate, unit, year, quarter, source, last_updated) "
                "VALUES (?, ?, ?, ?, 'kg_CO2_per_MWh', ?, ?, ?, ?)",
                [
                    (
                        row["subregion"],
                        row["name"],
                        row["state"],
                        round(row["rate_lb"] * LB_TO_KG, 3),
                        row["year"],
                        row["quarter"],
                        f"EPA_eGRID_{row['year']}",
                        updated_at,
                    )
                    for row in rows
                ],
            )
            cursor.execute("DELETE FROM egrid_postal_codes")
            cursor.executemany(
                "INSERT INTO egrid_postal_codes (prefix, subregion, state) VALUES (?, ?, ?)",
                [(prefix, subregion, state) for prefix, (subregion, state) in prefixes.items()],
            )
            conn.commit()
        finally:
            conn.close()

        cache.delete_prefix("egrid:")
        self.reset()
        self.ensure_loaded()
        logger.info("EPA eGRID data refreshed (%d subregions, %d prefixes)", len(rows), len(prefixes))
        return len(self._subregions)

    # Integrity ---------------------------------------------------------

    def validate_data_integrity(self) -> Dict[str, Any]:
        """Check coverage, age and plausibility of the loaded data."""
        self.ensure_loaded()
        errors: List[str] = []
        warnings: List[str] = []
        if not self._subregions:
            errors.append("No emission factors available")
        if not self._prefixes:
            errors.append("No postal code mappings available")

        age_days = (datetime.now(timezone.utc) - _parse_ts(self.last_updated)).days
        if age_days > MAX_DATA_AGE_DAYS:
            warnings.append(f"Data is {age_days} days old")

        gaps = [name for name in EXPECTED_SUBREGIONS if name not in self._subregions]
        if gaps:
            warnings.append(f"Missing data for subregions: {', '.join(gaps)}")

        quality = 1.0
        quality -= len(gaps) / len(EXPECTED_SUBREGIONS) * 0.3
        if age_days > MAX_DATA_AGE_DAYS:
            quality -= 0.2

        rates = [data.emission_rate for data in self._subregions.values()]
        average = sum(rates) / len(rates) if rates else 0.0
        outliers = [rate for rate in rates if abs(rate - average) > average * 2]
        if len(outliers) > len(rates) * 0.1:
            warnings.append(f"{len(outliers)} emission rates appear to be outliers")
            quality -= 0.1

        return {
            "is_valid": not errors,
            "errors": errors,
            "warnings": warnings,
            "statistics": {
                "subregions": len(self._subregions),
                "postal_code_mappings": len(self._prefixes),
                "average_emission_rate": round(average, 2),
                "data_age_days": age_days,
                "coverage_gaps": gaps,
                "data_quality": round(quality, 2),
                "origin": self.data_origin,
            },
        }


egrid_service = EGridService()
