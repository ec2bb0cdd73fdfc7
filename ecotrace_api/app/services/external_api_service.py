"""
Client for external carbon intensity APIs.

Currently this wraps the Electricity Maps "latest carbon intensity"
endpoint, which the calculation engine consults for grid factors
outside the US (or when no eGRID data matches).  Calls go through
``requests`` with a timeout and a ``CircuitBreaker`` so that an outage
does not slow every calculation down.  Responses are cached for five
minutes and requests are counted against an hourly quota.

Without an API key the client returns no data, so the engine falls back
to its default factor.  ``ELECTRICITY_MAPS_MOCK=true`` serves fixed
per-zone figures instead, which is convenient for local development.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from ecotrace_api.app.core.cache import cache
from ecotrace_api.app.core.circuit_breaker import CircuitBreaker, CircuitOpenError
from ecotrace_api.app.core.config import settings
from ecotrace_api.app.schemas.calculation import DataSource, DataSourceCoverage, ElectricityMapsData

logger = logging.getLogger(__name__)

ELECTRICITY_MAPS = "ElectricityMaps"
CACHE_TTL_SECONDS = 300
RATE_LIMIT_WINDOW_SECONDS = 3600

# zone -> (gCO2eq/kWh, renewable %)
MOCK_ZONES = {
    "US-CA": (250, 45),
    "DE": (350, 55),
    "FR": (180, 75),
    "AU": (600, 25),
    "NO": (50, 95),
}
MOCK_DEFAULT = (400, 35)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ExternalAPIService:
    """Electricity Maps client with health, quota and breaker tracking."""

    def __init__(self, session: Optional[requests.Session] = None) -> None:
        self.session = session or requests.Session()
        self.breaker = CircuitBreaker(
            "electricity_maps", failure_threshold=5, recovery_timeout=60, half_open_max_calls=3
        )
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        """Clear health counters, quota usage and breaker state."""
        with self._lock:
            self._health = {
                "service": ELECTRICITY_MAPS,
                "requests": 0,
                "successes": 0,
                "error_count": 0,
                "response_time_ms": 0.0,
                "last_success": None,
                "last_error": None,
            }
            self._rate_limit = {
                "requests": 0,
                "limit": settings.electricity_maps_hourly_limit,
                "reset_time": time.time() + RATE_LIMIT_WINDOW_SECONDS,
            }
        self.breaker.reset()

    @property
    def is_configured(self) -> bool:
        return bool(settings.electricity_maps_api_key) or settings.electricity_maps_mock

    # Bookkeeping -------------------------------------------------------

    def _consume_quota(self) -> bool:
        with self._lock:
            now = time.time()
            if now > self._rate_limit["reset_time"]:
                self._rate_limit["requests"] = 0
                self._rate_limit["reset_time"] = now + RATE_LIMIT_WINDOW_SECONDS
            if self._rate_limit["requests"] >= self._rate_limit["limit"]:
                return False
            self._rate_limit["requests"] += 1
            return True

    def _apply_rate_limit_headers(self, headers: Any) -> None:
        if not headers:
            return
        with self._lock:
            limit = headers.get("x-ratelimit-limit")
            remaining = headers.get("x-ratelimit-remaining")
            reset = headers.get("x-ratelimit-reset")
            if limit and str(limit).isdigit():
                self._rate_limit["limit"] = int(limit)
            if remaining and str(remaining).isdigit():
                self._rate_limit["requests"] = self._rate_limit["limit"] - int(remaining)
            if reset and str(reset).isdigit():
                self._rate_limit["reset_time"] = float(reset)

    def _record(self, success: bool, elapsed_ms: float, error: Optional[str] = None) -> None:
        with self._lock:
            self._health["requests"] += 1
            self._health["response_time_ms"] = round(elapsed_ms, 2)
            if success:
                self._health["successes"] += 1
                self._health["last_success"] = _now()
            else:
                self._health["error_count"] += 1
                self._health["last_error"] = {"message": error, "timestamp": _now()}

    def _success_rate(self) -> float:
        requests_made = self._health["requests"]
        return self._health["successes"] / requests_made if requests_made else 1.0

    # Electricity Maps ---------------------------------------------------

    def _mock_data(self, zone: str) -> ElectricityMapsData:
        intensity, renewable = MOCK_ZONES.get(zone, MOCK_DEFAULT)
        return ElectricityMapsData(
            zone=zone,
            carbon_intensity=intensity,
            timestamp=_now(),
            source="historical",
            renewable=renewable,
            fossil=100 - renewable,
        )

    def _fetch_electricity_maps(self, zone: str) -> Optional[ElectricityMapsData]:
        response = self.session.get(
            f"{settings.electricity_maps_base_url}/carbon-intensity/latest",
            params={"zone": zone},
            headers={"auth-token": settings.electricity_maps_api_key},
            timeout=settings.external_timeout_seconds,
        )
        self._apply_rate_limit_headers(response.headers)
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError(f"Unexpected Electricity Maps payload: {type(payload).__name__}")
        if not payload.get("carbonIntensity"):
            return None
        renewable = payload.get("renewablePercentage") or 0.0
        return ElectricityMapsData(
            zone=zone,
            carbon_intensity=float(payload["carbonIntensity"]),
            timestamp=payload.get("datetime") or _now(),
            source="forecast" if payload.get("isEstimated") else "real_time",
            renewable=renewable,
            fossil=100 - (payload.get("fossilFreePercentage") or renewable),
        )

    def get_electricity_maps_data(self, zone: str) -> Optional[ElectricityMapsData]:
        """Latest carbon intensity (gCO2eq/kWh, i.e. kg/MWh) for ``zone``.

        Returns ``None`` when the client is not configured, the quota is
        exhausted, the breaker is open or the request fails.
        """
        if not zone:
            return None
        if settings.electricity_maps_mock:
            return self._mock_data(zone)
        if not settings.electricity_maps_api_key:
            return None

        cache_key = f"electricity_maps:{zone}"
        cached = cache.get(cache_key)
        if cached is not None:
            return cached

        if not self._consume_quota():
            logger.warning("Electricity Maps hourly quota exhausted, skipping zone %s", zone)
            return None

        started = time.perf_counter()
        try:
            data = self.breaker.call(self._fetch_electricity_maps, zone)
        except CircuitOpenError:
            logger.debug("Electricity Maps breaker open, skipping zone %s", zone)
            return None
        except (requests.RequestException, ValueError, TypeError) as exc:
            self._record(False, (time.perf_counter() - started) * 1000, str(exc))
            logger.warning("Electricity Maps request failed for zone %s: %s", zone, exc)
            return None
        self._record(True, (time.perf_counter() - started) * 1000)
        if data is not None:
            cache.set(cache_key, data, ttl=CACHE_TTL_SECONDS)
        return data

    # Introspection ------------------------------------------------------

    def get_api_health(self) -> Dict[str, Any]:
        with self._lock:
            success_rate = self._success_rate()
            if not self.is_configured:
                status = "not_configured"
            elif self.breaker.is_open or success_rate <= 0.5:
                status = "unhealthy"
            elif success_rate <= 0.7:
                status = "degraded"
            else:
                status = "healthy"
            return {
                **self._health,
                "success_rate": round(success_rate, 4),
                "is_available": self.is_configured and success_rate > 0.7 and not self.breaker.is_open,
                "status": status,
            }

    def health_check(self) -> Dict[str, Any]:
        """Aggregate health of configured APIs.

        Unconfigured APIs are reported but do not degrade the status.
        """
        services = [self.get_api_health()]
        considered = [s for s in services if s["status"] != "not_configured"]
        healthy = sum(1 for s in considered if s["status"] == "healthy")
        if healthy == len(considered):
            status = "healthy"
        elif healthy >= len(considered) * 0.5:
            status = "degraded"
        else:
            status = "unhealthy"
        return {
            "status": status,
            "services": services,
            "circuit_breakers": self.get_circuit_breaker_states(),
            "rate_limits": self.get_rate_limit_status(),
            "last_updated": _now(),
        }

    def get_data_sources(self) -> List[DataSource]:
        with self._lock:
            last_success = self._health["last_success"] or _now()
            reliability = round(self._success_rate(), 4) if self.is_configured else 0.0
        return [
            DataSource(
                name="Electricity Maps",
                type="Electricity_Maps",
                last_updated=last_success,
                freshness="real_time",
                reliability=reliability,
                coverage=DataSourceCoverage(
                    geographic=["Global", "Real-time grid data"],
                    temporal="Live updates every 5-15 minutes",
                    activities=["electricity"],
                ),
            )
        ]

    def get_circuit_breaker_states(self) -> Dict[str, Dict[str, Any]]:
        return {"electricity_maps": self.breaker.get_state()}

    def force_refresh(self, zone: Optional[str] = None) -> int:
        """Drop cached responses (for one zone or all) and close the breaker."""
        if zone:
            removed = 1 if cache.delete(f"electricity_maps:{zone}") else 0
        else:
            removed = cache.delete_prefix("electricity_maps:")
        self.breaker.reset()
        logger.info("Electricity Maps cache refreshed (%d entries dropped)", removed)
        return removed

    def get_rate_limit_status(self) -> List[Dict[str, Any]]:
        with self._lock:
            used = self._rate_limit["requests"]
            limit = self._rate_limit["limit"] or 1
            percentage = round(used / limit * 100)
            return [
                {
                    "service": ELECTRICITY_MAPS,
                    "requests": used,
                    "limit": self._rate_limit["limit"],
                    "remaining": max(0, self._rate_limit["limit"] - used),
                    "reset_time": datetime.fromtimestamp(
                        self._rate_limit["reset_time"], tz=timezone.utc
                    ).isoformat(),
                    "percentage_used": percentage,
                    "is_near_limit": percentage >= 80,
                }
            ]


external_api_service = ExternalAPIService()
