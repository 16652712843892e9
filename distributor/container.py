"""Composition root: wires every service with explicit dependencies"""

from typing import Optional

from distributor.config import AppConfig, config as default_config
from distributor.database import DatabaseService
from distributor.jobs.maintenance import register_maintenance_jobs
from distributor.scheduler import SchedulerService
from distributor.services.authenticator import FtpAuthenticator
from distributor.services.control_service import ControlService
from distributor.services.destination_manager import DestinationManager
from distributor.services.event_bus import EventBus
from distributor.services.google_auth import GoogleAuthService
from distributor.services.ingestion import IngestionPipeline
from distributor.services.rate_limiter import LoginRateLimiter
from distributor.services.settings_service import SettingsService
from distributor.services.status_service import StatusService
from distributor.utils.logger import get_logger

logger = get_logger(__name__)


class Distributor:
    """Owns the lifetime of the record store, destinations and background jobs"""

    def __init__(self, app_config: AppConfig):
        self.config = app_config
        self.database = DatabaseService(app_config)
        self.event_bus = EventBus()
        self.settings_service = SettingsService(self.database)
        self.manager = DestinationManager(self.database, self.event_bus)
        self.rate_limiter = LoginRateLimiter(
            max_attempts=app_config.rate_limit_max_attempts,
            window_seconds=app_config.rate_limit_window_seconds,
        )
        self.authenticator = FtpAuthenticator(self.settings_service, self.rate_limiter)
        self.pipeline = IngestionPipeline(
            self.database,
            self.manager,
            self.settings_service,
            app_config,
            event_bus=self.event_bus,
        )
        self.status = StatusService(self.database, self.manager)
        self.control = ControlService(
            self.settings_service,
            self.manager,
            self.database,
            app_config,
            event_bus=self.event_bus,
        )
        self.google_auth = GoogleAuthService(self.settings_service, self.database)
        self.scheduler = SchedulerService()
        self.started = False

    async def start(self):
        """
        Open the store, load settings, bring destinations up and start jobs

        Raises:
            StoreUnavailableError: The record store cannot be opened (fatal)
        """
        if self.started:
            return
        logger.debug("Starting photo distributor")

        self.config.upload_dir.mkdir(parents=True, exist_ok=True)
        self.database.open()

        settings = await self.settings_service.load()
        await self.control.setup_destinations(settings)

        self.scheduler.initialize()
        register_maintenance_jobs(self.scheduler, self.database, self.rate_limiter, self.config)
        self.scheduler.start()

        self.started = True
        logger.info("✅ Photo distributor started")

    async def shutdown(self):
        """Drain in-flight work, release destinations, flush and close the store"""
        if not self.started:
            return
        logger.debug("Shutting down photo distributor")

        self.scheduler.stop()
        await self.pipeline.drain()
        await self.manager.cleanup_all()
        await self.google_auth.close()
        await self.event_bus.drain()

        try:
            self.database.flush()
        except Exception as e:
            logger.error(f"Final store flush failed: {e}")
        self.database.close()

        self.started = False
        logger.info("Photo distributor stopped")


def build_distributor(app_config: Optional[AppConfig] = None) -> Distributor:
    return Distributor(app_config or default_config)
