"""Periodic store flush and rate-limiter sweep"""

from distributor.config import AppConfig
from distributor.database import DatabaseService
from distributor.scheduler import SchedulerService
from distributor.services.rate_limiter import LoginRateLimiter
from distributor.utils.logger import get_logger

logger = get_logger(__name__)

FLUSH_JOB_ID = "store_flush"
SWEEP_JOB_ID = "rate_limiter_sweep"


async def flush_store_job(database: DatabaseService):
    """Checkpoint the record store"""
    try:
        database.flush()
    except Exception as e:
        logger.warning(f"Store flush failed: {e}")


async def sweep_rate_limiter_job(rate_limiter: LoginRateLimiter):
    """Drop expired login-failure windows"""
    removed = rate_limiter.sweep()
    if removed:
        logger.debug(f"🧹 Removed {removed} expired rate limit entries")


def register_maintenance_jobs(
    scheduler: SchedulerService,
    database: DatabaseService,
    rate_limiter: LoginRateLimiter,
    app_config: AppConfig,
):
    scheduler.add_interval_job(
        flush_store_job,
        seconds=app_config.store_flush_interval_seconds,
        job_id=FLUSH_JOB_ID,
        args=[database],
    )
    scheduler.add_interval_job(
        sweep_rate_limiter_job,
        minutes=app_config.rate_limit_sweep_minutes,
        job_id=SWEEP_JOB_ID,
        args=[rate_limiter],
    )
