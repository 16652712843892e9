"""Unit tests for the scheduler service and maintenance jobs"""

from unittest.mock import MagicMock

import pytest

from distributor.jobs.maintenance import (
    FLUSH_JOB_ID,
    SWEEP_JOB_ID,
    flush_store_job,
    register_maintenance_jobs,
    sweep_rate_limiter_job,
)
from distributor.scheduler import SchedulerService
from distributor.services.rate_limiter import LoginRateLimiter


def test_add_job_requires_initialize():
    scheduler = SchedulerService()
    with pytest.raises(RuntimeError):
        scheduler.add_interval_job(lambda: None, seconds=5, job_id="noop")
    assert scheduler.get_jobs() == []


def test_register_maintenance_jobs(app_config):
    scheduler = SchedulerService()
    scheduler.initialize()

    register_maintenance_jobs(scheduler, MagicMock(), LoginRateLimiter(), app_config)

    jobs = {job.id: job for job in scheduler.get_jobs()}
    assert set(jobs) == {FLUSH_JOB_ID, SWEEP_JOB_ID}
    assert jobs[FLUSH_JOB_ID].trigger.interval.total_seconds() == app_config.store_flush_interval_seconds
    assert jobs[SWEEP_JOB_ID].trigger.interval.total_seconds() == app_config.rate_limit_sweep_minutes * 60


@pytest.mark.asyncio
async def test_re_registering_replaces_jobs(app_config):
    scheduler = SchedulerService()
    scheduler.initialize()
    scheduler.start()
    try:
        register_maintenance_jobs(scheduler, MagicMock(), LoginRateLimiter(), app_config)
        register_maintenance_jobs(scheduler, MagicMock(), LoginRateLimiter(), app_config)

        assert len(scheduler.get_jobs()) == 2
    finally:
        scheduler.stop()


@pytest.mark.asyncio
async def test_start_and_stop():
    scheduler = SchedulerService()
    scheduler.initialize()

    scheduler.start()
    assert scheduler.running is True

    scheduler.stop()
    assert scheduler.running is False


@pytest.mark.asyncio
async def test_flush_job_tolerates_failures():
    database = MagicMock()
    database.flush.side_effect = RuntimeError("disk full")

    await flush_store_job(database)

    database.flush.assert_called_once()


@pytest.mark.asyncio
async def test_sweep_job():
    limiter = MagicMock()
    limiter.sweep.return_value = 3

    await sweep_rate_limiter_job(limiter)

    limiter.sweep.assert_called_once()
