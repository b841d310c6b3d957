"""
KrushiMitra Scheduler - Maintenance Sweeps
==========================================

APScheduler-based background tasks that keep process memory bounded:
- Weather cache sweep: drops buckets older than the max cache age
- OTP sweep: drops expired, never-verified codes

Usage:
    from krushimitra.core.scheduler import MaintenanceScheduler
    scheduler = MaintenanceScheduler(weather_cache, authenticator)
    await scheduler.start()
    # ... on shutdown ...
    await scheduler.shutdown()
"""
import logging
import time
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from krushimitra.auth.otp import OtpAuthenticator
from krushimitra.weather.cache import WeatherCache

logger = logging.getLogger(__name__)


async def run_weather_sweep(cache: WeatherCache, max_age_seconds: float) -> int:
    """Remove weather buckets not refreshed within max_age_seconds."""
    try:
        start = time.monotonic()
        removed = cache.sweep(max_age_seconds)
        duration_ms = (time.monotonic() - start) * 1000
        logger.info(
            f"🧹 Weather sweep complete: {removed} bucket(s) removed, "
            f"{len(cache)} left, took {duration_ms:.1f}ms"
        )
        return removed
    except Exception as e:
        logger.error(f"❌ Weather sweep failed: {e}", exc_info=True)
        return 0


async def run_otp_sweep(authenticator: OtpAuthenticator) -> int:
    """Remove expired OTP records."""
    try:
        removed = authenticator.sweep()
        logger.info(f"🧹 OTP sweep complete: {removed} record(s) removed")
        return removed
    except Exception as e:
        logger.error(f"❌ OTP sweep failed: {e}", exc_info=True)
        return 0


class MaintenanceScheduler:
    """
    APScheduler wrapper for the in-memory sweeps.

    Designed for FastAPI lifespan integration.
    """

    def __init__(
        self,
        weather_cache: Optional[WeatherCache] = None,
        authenticator: Optional[OtpAuthenticator] = None,
        weather_sweep_minutes: int = 30,
        weather_max_age_seconds: float = 24 * 3600,
        otp_sweep_minutes: int = 5,
    ):
        self.weather_cache = weather_cache
        self.authenticator = authenticator
        self.weather_sweep_minutes = weather_sweep_minutes
        self.weather_max_age_seconds = weather_max_age_seconds
        self.otp_sweep_minutes = otp_sweep_minutes
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._started = False

    async def start(self) -> None:
        """Initialize and start the scheduler."""
        if self._started:
            logger.warning("Scheduler already started")
            return

        self._scheduler = AsyncIOScheduler()

        if self.weather_cache is not None:
            self._scheduler.add_job(
                run_weather_sweep,
                trigger=IntervalTrigger(minutes=self.weather_sweep_minutes),
                args=[self.weather_cache, self.weather_max_age_seconds],
                id="weather_cache_sweep",
                name="Weather Cache Sweep",
                replace_existing=True,
            )

        if self.authenticator is not None:
            self._scheduler.add_job(
                run_otp_sweep,
                trigger=IntervalTrigger(minutes=self.otp_sweep_minutes),
                args=[self.authenticator],
                id="otp_sweep",
                name="Expired OTP Sweep",
                replace_existing=True,
            )

        self._scheduler.start()
        self._started = True
        logger.info(
            f"🚀 Scheduler started: weather sweep every {self.weather_sweep_minutes}m, "
            f"OTP sweep every {self.otp_sweep_minutes}m"
        )

    async def shutdown(self) -> None:
        """Shutdown the scheduler gracefully."""
        if self._scheduler and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("🛑 Scheduler shutdown complete")

    @property
    def is_running(self) -> bool:
        return self._started and self._scheduler is not None

    def get_jobs(self) -> list:
        """Get list of scheduled jobs (for testing/debugging)."""
        if self._scheduler:
            return self._scheduler.get_jobs()
        return []
