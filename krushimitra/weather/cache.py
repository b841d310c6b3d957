"""
Weather Cache
=============

TTL cache in front of the weather provider, keyed by coordinate bucket
(lat/lon rounded to 2 decimals, roughly a 1 km square).

Per bucket:
- Fresh (age < TTL): serve cached, cached=True
- Empty or stale: refresh from upstream
  - success: store and serve, cached=False
  - rate limit / timeout / transport / non-2xx / circuit open / not
    configured: serve the previous payload with stale=True, or the
    neutral fallback payload with fallback=True when there is none

Valid coordinates therefore always get a usable payload; upstream
failures never become request failures.

Concurrent refreshes of one bucket share a single upstream call. The
map is process-local: each server instance has its own cache.
"""
import asyncio
import copy
import dataclasses
import logging
from typing import Any, Dict, Optional, Tuple

from krushimitra.core.circuit_breaker import CircuitBreaker, CircuitBreakerOpen
from krushimitra.core.errors import (
    ProviderNotConfigured,
    TransientError,
    ValidationError,
)
from krushimitra.core.types import (
    AdvisoryCategory,
    Clock,
    WeatherCacheEntry,
    WeatherResult,
    system_clock,
)
from krushimitra.weather.advisory import ADVISORY_TEXT, AdvisoryPolicy
from krushimitra.weather.provider import WeatherProvider

logger = logging.getLogger(__name__)

WEATHER_CACHE_TTL_SECONDS = 10 * 60
COORDINATE_PRECISION = 2

FALLBACK_PAYLOAD: Dict[str, Any] = {
    "temperature": 28,
    "humidity": 65,
    "wind_speed": 10,
    "precipitation_probability": 20,
    "weather_code": 1101,
    "condition": "Partly Cloudy",
    "advisory": ADVISORY_TEXT[AdvisoryCategory.UNAVAILABLE],
    "advisory_category": AdvisoryCategory.UNAVAILABLE.value,
    "forecast": [],
}


def parse_coordinates(latitude: Any, longitude: Any) -> Tuple[float, float]:
    if latitude is None or longitude is None or latitude == "" or longitude == "":
        raise ValidationError("Latitude and longitude are required")
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        raise ValidationError("Latitude and longitude must be numeric")
    if not -90.0 <= lat <= 90.0 or not -180.0 <= lon <= 180.0:
        raise ValidationError("Latitude and longitude out of range")
    return lat, lon


def bucket_key(latitude: float, longitude: float, precision: int = COORDINATE_PRECISION) -> str:
    return f"{latitude:.{precision}f},{longitude:.{precision}f}"


class WeatherCache:
    """Read-through cache with stale-serve and fallback degradation."""

    def __init__(
        self,
        provider: WeatherProvider,
        ttl_seconds: float = WEATHER_CACHE_TTL_SECONDS,
        clock: Clock = system_clock,
        precision: int = COORDINATE_PRECISION,
        timeout_seconds: float = 10.0,
        breaker: Optional[CircuitBreaker] = None,
        policy: Optional[AdvisoryPolicy] = None,
    ):
        self.provider = provider
        self.ttl_seconds = ttl_seconds
        self.precision = precision
        self.timeout_seconds = timeout_seconds
        self.breaker = breaker
        self.policy = policy or AdvisoryPolicy()
        self._clock = clock

        self._entries: Dict[str, WeatherCacheEntry] = {}
        self._inflight: Dict[str, "asyncio.Future[WeatherResult]"] = {}
        self._stats = {
            "hits": 0,
            "misses": 0,
            "refreshes": 0,
            "stale_served": 0,
            "fallbacks": 0,
        }

    def _fresh_entry(self, bucket: str) -> Optional[WeatherCacheEntry]:
        entry = self._entries.get(bucket)
        if entry is not None and self._clock() - entry.fetched_at < self.ttl_seconds:
            return entry
        return None

    def _serve_cached(self, bucket: str, entry: WeatherCacheEntry) -> WeatherResult:
        self._stats["hits"] += 1
        logger.debug(f"Weather served from cache: bucket={bucket}")
        return WeatherResult(payload=copy.deepcopy(entry.payload), bucket=bucket, cached=True)

    async def get(self, latitude: Any, longitude: Any) -> WeatherResult:
        lat, lon = parse_coordinates(latitude, longitude)
        bucket = bucket_key(lat, lon, self.precision)

        entry = self._fresh_entry(bucket)
        if entry is not None:
            return self._serve_cached(bucket, entry)

        # One refresh per bucket; every waiter gets its outcome, degraded or not
        task = self._inflight.get(bucket)
        if task is None:
            self._stats["misses"] += 1
            task = asyncio.ensure_future(self._refresh(bucket, lat, lon))
            self._inflight[bucket] = task
            task.add_done_callback(lambda done: self._release(bucket, done))

        result = await asyncio.shield(task)
        return dataclasses.replace(result, payload=copy.deepcopy(result.payload))

    def _release(self, bucket: str, task: "asyncio.Future[WeatherResult]") -> None:
        if self._inflight.get(bucket) is task:
            del self._inflight[bucket]

    async def _refresh(self, bucket: str, lat: float, lon: float) -> WeatherResult:
        try:
            if self.breaker is not None:
                self.breaker.check_state()
            raw = await asyncio.wait_for(
                self.provider.fetch(lat, lon),
                timeout=self.timeout_seconds,
            )
        except CircuitBreakerOpen as e:
            logger.warning(f"Weather upstream skipped, circuit open: bucket={bucket} ({e})")
            return self._degrade(bucket)
        except ProviderNotConfigured:
            logger.error(f"Weather provider not configured: bucket={bucket}")
            return self._degrade(bucket)
        except asyncio.TimeoutError:
            self._record_failure("UPSTREAM_TIMEOUT")
            logger.warning(
                f"Weather upstream timed out after {self.timeout_seconds}s: bucket={bucket}"
            )
            return self._degrade(bucket)
        except TransientError as e:
            self._record_failure(e.code)
            logger.warning(f"Weather upstream failed: kind={e.code} bucket={bucket} ({e.message})")
            return self._degrade(bucket)
        except Exception as e:
            self._record_failure(type(e).__name__)
            logger.error(
                f"Unexpected weather upstream error: kind={type(e).__name__} bucket={bucket}",
                exc_info=True,
            )
            return self._degrade(bucket)

        if self.breaker is not None:
            self.breaker.record_success()

        payload = self.policy.annotate(raw)
        self._entries[bucket] = WeatherCacheEntry(payload=payload, fetched_at=self._clock())
        self._stats["refreshes"] += 1
        logger.info(
            f"Weather refreshed: bucket={bucket} temperature={payload.get('temperature')} "
            f"condition={payload.get('condition')}"
        )
        return WeatherResult(payload=copy.deepcopy(payload), bucket=bucket, cached=False)

    def _record_failure(self, error_type: str) -> None:
        if self.breaker is not None:
            self.breaker.record_failure(error_type=error_type)

    def _degrade(self, bucket: str) -> WeatherResult:
        entry = self._entries.get(bucket)
        if entry is not None:
            self._stats["stale_served"] += 1
            logger.info(f"Returning stale cached weather: bucket={bucket}")
            return WeatherResult(
                payload=copy.deepcopy(entry.payload),
                bucket=bucket,
                cached=True,
                stale=True,
            )

        self._stats["fallbacks"] += 1
        logger.info(f"Returning fallback weather: bucket={bucket}")
        return WeatherResult(
            payload=copy.deepcopy(FALLBACK_PAYLOAD),
            bucket=bucket,
            fallback=True,
        )

    def sweep(self, max_age_seconds: float) -> int:
        """Drop entries older than max_age_seconds. Returns count removed."""
        cutoff = self._clock() - max_age_seconds
        expired = [b for b, e in self._entries.items() if e.fetched_at < cutoff]
        for bucket in expired:
            del self._entries[bucket]
        if expired:
            logger.info(f"Weather cache sweep removed {len(expired)} bucket(s)")
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self._stats)
        data["entries"] = len(self._entries)
        if self.breaker is not None:
            data["circuit"] = self.breaker.state
        return data

    def __len__(self) -> int:
        return len(self._entries)
