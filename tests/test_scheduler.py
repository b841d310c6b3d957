"""
Test MaintenanceScheduler
=========================

Tests for the APScheduler-based sweep scheduler.
Verifies configuration without waiting for actual execution time.
"""
import pytest
from unittest.mock import MagicMock

from apscheduler.triggers.interval import IntervalTrigger


class TestMaintenanceScheduler:
    """Tests for MaintenanceScheduler initialization and configuration."""

    @pytest.mark.asyncio
    async def test_scheduler_starts_successfully(self):
        """Verify scheduler starts and is running."""
        from krushimitra.core.scheduler import MaintenanceScheduler

        scheduler = MaintenanceScheduler(MagicMock(), MagicMock())
        assert not scheduler.is_running

        await scheduler.start()
        assert scheduler.is_running

        await scheduler.shutdown()
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_scheduler_adds_sweep_jobs(self):
        """Both sweeps are registered as interval jobs."""
        from krushimitra.core.scheduler import MaintenanceScheduler

        scheduler = MaintenanceScheduler(
            MagicMock(),
            MagicMock(),
            weather_sweep_minutes=30,
            otp_sweep_minutes=5,
        )
        await scheduler.start()

        jobs = {job.id: job for job in scheduler.get_jobs()}
        assert set(jobs) == {"weather_cache_sweep", "otp_sweep"}
        assert isinstance(jobs["weather_cache_sweep"].trigger, IntervalTrigger)
        assert jobs["weather_cache_sweep"].trigger.interval.total_seconds() == 30 * 60
        assert jobs["otp_sweep"].trigger.interval.total_seconds() == 5 * 60

        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_only_configured_sweeps_are_scheduled(self):
        from krushimitra.core.scheduler import MaintenanceScheduler

        scheduler = MaintenanceScheduler(weather_cache=MagicMock())
        await scheduler.start()

        assert [job.id for job in scheduler.get_jobs()] == ["weather_cache_sweep"]

        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_scheduler_double_start_is_safe(self):
        """Verify calling start() twice doesn't cause issues."""
        from krushimitra.core.scheduler import MaintenanceScheduler

        scheduler = MaintenanceScheduler(MagicMock(), MagicMock())
        await scheduler.start()
        await scheduler.start()  # Should not raise

        assert len(scheduler.get_jobs()) == 2

        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_without_start_is_safe(self):
        """Verify calling shutdown() without start() doesn't crash."""
        from krushimitra.core.scheduler import MaintenanceScheduler

        scheduler = MaintenanceScheduler()
        await scheduler.shutdown()  # Should not raise
        assert scheduler.get_jobs() == []


class TestSweepJobs:
    """Tests for the job functions."""

    @pytest.mark.asyncio
    async def test_weather_sweep_calls_cache(self):
        from krushimitra.core.scheduler import run_weather_sweep

        cache = MagicMock()
        cache.sweep.return_value = 3
        cache.__len__.return_value = 7

        removed = await run_weather_sweep(cache, 3600)

        assert removed == 3
        cache.sweep.assert_called_once_with(3600)

    @pytest.mark.asyncio
    async def test_weather_sweep_handles_exceptions(self):
        """Job errors are logged, never raised into the scheduler."""
        from krushimitra.core.scheduler import run_weather_sweep

        cache = MagicMock()
        cache.sweep.side_effect = RuntimeError("boom")

        assert await run_weather_sweep(cache, 3600) == 0

    @pytest.mark.asyncio
    async def test_otp_sweep_calls_authenticator(self):
        from krushimitra.core.scheduler import run_otp_sweep

        authenticator = MagicMock()
        authenticator.sweep.return_value = 2

        assert await run_otp_sweep(authenticator) == 2
        authenticator.sweep.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_otp_sweep_handles_exceptions(self):
        from krushimitra.core.scheduler import run_otp_sweep

        authenticator = MagicMock()
        authenticator.sweep.side_effect = RuntimeError("boom")

        assert await run_otp_sweep(authenticator) == 0
