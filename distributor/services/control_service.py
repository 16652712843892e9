"""Administrative operations: settings updates and retries"""

from pathlib import Path
from typing import Any, Dict, List, Optional

from distributor.config import AppConfig
from distributor.database import DatabaseService
from distributor.destinations import build_destinations
from distributor.destinations.base import UploadMetadata
from distributor.errors import DisabledError, NotFoundError, SourceMissingError
from distributor.models.destination_upload import DestinationUpload
from distributor.models.received_file import ReceivedFile
from distributor.models.settings import DistributorSettings
from distributor.services.destination_manager import DestinationManager, compute_retry_eligible
from distributor.services.event_bus import SETTINGS_UPDATED, EventBus
from distributor.services.settings_service import SettingsService
from distributor.utils.logger import get_logger, log_settings_summary

logger = get_logger(__name__)


class ControlService:
    """Control surface used by the HTTP API and the composition root"""

    def __init__(
        self,
        settings_service: SettingsService,
        manager: DestinationManager,
        database: DatabaseService,
        app_config: AppConfig,
        event_bus: Optional[EventBus] = None,
    ):
        self.settings_service = settings_service
        self.manager = manager
        self.database = database
        self.config = app_config
        self.event_bus = event_bus

    async def setup_destinations(self, settings: Optional[DistributorSettings] = None) -> Dict[str, bool]:
        """Build destinations from settings, swap them in and initialize them"""
        if settings is None:
            settings = await self.settings_service.reload()
        log_settings_summary(logger, settings)

        destinations = build_destinations(settings, self.config, self.database)
        self.manager.replace_all(destinations)
        outcomes = await self.manager.initialize_all()

        if not destinations:
            logger.warning(f"No destinations enabled, files will be placed under {self.config.photos_dir}")
        return outcomes

    async def update_settings(self, updates: Dict[str, Any]) -> DistributorSettings:
        """Merge, persist and re-register destinations"""
        updated = await self.settings_service.update(updates)
        await self.setup_destinations(updated)
        if self.event_bus is not None:
            self.event_bus.publish(SETTINGS_UPDATED, keys=sorted(updates.keys()))
        logger.info("✅ Settings updated", keys=sorted(updates.keys()))
        return updated

    def _metadata_for(self, received: ReceivedFile) -> UploadMetadata:
        return UploadMetadata(
            received_id=received.id,
            original_filename=received.filename,
            destination_filename=received.filename,
            date=received.effective_date or received.received_at,
            mime_type=received.mime_type,
            extension=Path(received.filename).suffix.lower(),
        )

    @staticmethod
    def _resolve_source(received: ReceivedFile, history: List[DestinationUpload]) -> Optional[Path]:
        """The source artifact, or the newest stored copy once the delete policy removed it"""
        candidates = [received.source_path] if received.source_path else []
        for record in reversed(history):
            if record.success and isinstance(record.result, dict):
                candidates.append(record.result.get("destinationPath"))

        for candidate in candidates:
            if candidate and Path(candidate).is_file():
                return Path(candidate)
        return None

    async def retry_upload(self, received_id: str, destination: str) -> Dict[str, Any]:
        """
        Re-run one upload from the stored source artifact or a copy of it

        A destination that already has a success record for this file is not
        uploaded again; the outcome is returned with ``skipped`` set.

        Raises:
            NotFoundError: Unknown receipt id or destination
            DisabledError: Destination registered but disabled
            SourceMissingError: Neither the source artifact nor a stored copy exists
        """
        received = self.database.get_received(received_id)
        if received is None:
            raise NotFoundError(f"Received file not found: {received_id}")

        target = self.manager.get(destination)
        if target is None:
            raise NotFoundError(f"Destination not found: {destination}")
        if not target.enabled:
            raise DisabledError(f"Destination is disabled: {destination}")

        history = self.database.uploads_for(received_id)
        if any(record.success and record.destination == destination for record in history):
            logger.info(f"{received.filename} already uploaded to {destination}, not retrying")
            return {"destination": destination, "success": True, "skipped": True}

        source = self._resolve_source(received, history)
        if source is None:
            raise SourceMissingError(f"Source file for {received.filename} no longer exists")

        logger.info(f"🔁 Retrying upload of {received.filename} to {destination}")
        return await self.manager.upload_to(destination, source, self._metadata_for(received))

    async def retry_all_eligible_failures(self) -> Dict[str, int]:
        """Retry every (file, destination) pair that failed and never succeeded"""
        summary = {"attempted": 0, "succeeded": 0, "failed": 0, "skipped": 0}

        failed_ids = {
            record.received_id
            for record in self.database.find(DestinationUpload, DestinationUpload.success == False)  # noqa: E712
        }
        if not failed_ids:
            return summary

        history = self.database.uploads_for_many(sorted(failed_ids))
        for received_id, records in history.items():
            for destination in compute_retry_eligible(records):
                try:
                    outcome = await self.retry_upload(received_id, destination)
                except (NotFoundError, DisabledError) as e:
                    logger.info(f"Skipping retry of {received_id} to {destination}: {e}")
                    summary["skipped"] += 1
                    continue

                summary["attempted"] += 1
                if outcome["success"]:
                    summary["succeeded"] += 1
                else:
                    summary["failed"] += 1

        logger.info("Retry of failed uploads finished", **summary)
        return summary
