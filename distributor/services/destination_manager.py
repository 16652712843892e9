"""Destination orchestrator: registry, fan-out, active-upload tracking and retries"""

import asyncio
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set
from uuid import uuid4

from distributor.database import DatabaseService
from distributor.destinations.base import BaseDestination, UploadMetadata
from distributor.errors import DisabledError, NotFoundError
from distributor.models.destination_upload import DestinationUpload
from distributor.services.event_bus import UPLOAD_COMPLETE, UPLOAD_START, EventBus
from distributor.utils.logger import get_logger
from distributor.utils.time_utils import utcnow

logger = get_logger(__name__)


def compute_retry_eligible(history: Iterable[DestinationUpload]) -> List[str]:
    """
    Destinations of one file that failed and never succeeded

    A success for a destination supersedes every earlier (and later) failure.
    Order follows the first failure of each destination in append order.
    """
    records = list(history)
    succeeded = {record.destination for record in records if record.success}
    eligible: List[str] = []
    for record in records:
        if not record.success and record.destination not in succeeded and record.destination not in eligible:
            eligible.append(record.destination)
    return eligible


class DestinationManager:
    """Holds the destination registry and fans uploads out to it"""

    def __init__(self, database: DatabaseService, event_bus: Optional[EventBus] = None):
        self.database = database
        self.event_bus = event_bus
        self._destinations: Dict[str, BaseDestination] = {}
        self._active_uploads: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._retiring: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, destination: BaseDestination):
        """Add a destination; a later registration under the same name wins"""
        name = destination.get_name()
        previous = self._destinations.get(name)
        self._destinations[name] = destination
        if previous is not None and previous is not destination:
            self._retire(previous)
        logger.info(f"Registered destination: {name} (enabled: {destination.enabled})")

    def replace_all(self, destinations: Iterable[BaseDestination]):
        """
        Swap the whole registry

        Replaced instances keep serving their in-flight uploads and are
        cleaned up once those drain.
        """
        previous = list(self._destinations.values())
        self._destinations = {}
        for destination in destinations:
            self._destinations[destination.get_name()] = destination

        current = set(map(id, self._destinations.values()))
        for destination in previous:
            if id(destination) not in current:
                self._retire(destination)
        logger.info(f"Destinations replaced: {', '.join(self._destinations) or 'none'}")

    def get(self, name: str) -> Optional[BaseDestination]:
        return self._destinations.get(name)

    def get_all_destinations(self) -> List[BaseDestination]:
        return list(self._destinations.values())

    def get_enabled_destinations(self) -> List[BaseDestination]:
        return [destination for destination in self._destinations.values() if destination.enabled]

    async def has_ready_destinations(self) -> bool:
        for destination in self.get_enabled_destinations():
            if await destination.is_ready():
                return True
        return False

    async def describe(self) -> List[Dict[str, Any]]:
        """Registry snapshot for status surfaces"""
        described = []
        for name, destination in self._destinations.items():
            ready = await destination.is_ready() if destination.enabled else False
            described.append(
                {
                    "name": name,
                    "type": destination.__class__.__name__,
                    "enabled": destination.enabled,
                    "ready": ready,
                    "activeUploads": len(self._active_uploads.get(name, {})),
                }
            )
        return described

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize_all(self) -> Dict[str, bool]:
        """Initialize enabled destinations concurrently; failures disable the destination"""
        enabled = self.get_enabled_destinations()
        outcomes = await asyncio.gather(*(self._initialize_one(destination) for destination in enabled))
        return {destination.get_name(): ok for destination, ok in zip(enabled, outcomes)}

    async def _initialize_one(self, destination: BaseDestination) -> bool:
        name = destination.get_name()
        try:
            await destination.initialize()
            logger.info(f"✅ Destination initialized: {name}")
            return True
        except Exception as e:
            destination.enabled = False
            logger.warning(f"Failed to initialize destination {name}, disabling it: {e}")
            return False

    async def cleanup_all(self):
        """Release every destination, including replaced ones still draining"""
        for destination in list(self._destinations.values()):
            await self._safe_cleanup(destination)
        await self.wait_retired()

    async def wait_retired(self):
        if self._retiring:
            await asyncio.gather(*list(self._retiring), return_exceptions=True)

    def _retire(self, destination: BaseDestination):
        try:
            task = asyncio.get_running_loop().create_task(self._cleanup_when_idle(destination))
        except RuntimeError:
            logger.debug(f"No running loop, dropping {destination.get_name()} without cleanup")
            return
        self._retiring.add(task)
        task.add_done_callback(self._retiring.discard)

    async def _cleanup_when_idle(self, destination: BaseDestination):
        await destination.wait_idle()
        await self._safe_cleanup(destination)

    async def _safe_cleanup(self, destination: BaseDestination):
        try:
            await destination.cleanup()
        except Exception as e:
            logger.warning(f"Cleanup failed for {destination.get_name()}: {e}")

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    async def upload_to_all(self, file_path: Path, metadata: UploadMetadata) -> List[Dict[str, Any]]:
        """
        Upload one file to every enabled destination in parallel

        Each destination gets its own task and its own upload record; a failure
        in one never affects the others.

        Returns:
            One ``{destination, success, result | error}`` dict per destination
        """
        enabled = self.get_enabled_destinations()
        if not enabled:
            logger.warning(f"No destinations enabled for {metadata.original_filename}")
            return []

        logger.info(
            f"Uploading {metadata.original_filename} to {len(enabled)} destination(s): "
            f"{', '.join(d.get_name() for d in enabled)}"
        )
        outcomes = await asyncio.gather(
            *(self._upload_one(destination, file_path, metadata) for destination in enabled)
        )

        succeeded = sum(1 for outcome in outcomes if outcome["success"])
        logger.info(f"Upload complete for {metadata.original_filename}: {succeeded}/{len(outcomes)} succeeded")
        return list(outcomes)

    async def upload_to(self, name: str, file_path: Path, metadata: UploadMetadata) -> Dict[str, Any]:
        """
        Upload to a single destination

        Raises:
            NotFoundError: If no destination is registered under ``name``
            DisabledError: If the destination is registered but disabled
        """
        destination = self._destinations.get(name)
        if destination is None:
            raise NotFoundError(f"Destination not found: {name}")
        if not destination.enabled:
            raise DisabledError(f"Destination is disabled: {name}")
        return await self._upload_one(destination, file_path, metadata)

    async def _upload_one(self, destination: BaseDestination, file_path: Path, metadata: UploadMetadata) -> Dict[str, Any]:
        name = destination.get_name()
        started = time.monotonic()

        async with self._track_upload(destination, metadata):
            try:
                result = await destination.upload(file_path, metadata)
                outcome = {"destination": name, "success": True, "result": result}
            except Exception as e:
                logger.error(f"Upload of {metadata.original_filename} to {name} failed: {e}")
                outcome = {"destination": name, "success": False, "error": str(e) or e.__class__.__name__}
            duration_ms = int((time.monotonic() - started) * 1000)
            self._record_outcome(outcome, metadata, duration_ms)

        self._publish(
            UPLOAD_COMPLETE,
            destination=name,
            filename=metadata.original_filename,
            received_id=metadata.received_id,
            success=outcome["success"],
            error=outcome.get("error"),
            duration_ms=duration_ms,
        )
        return outcome

    def _record_outcome(self, outcome: Dict[str, Any], metadata: UploadMetadata, duration_ms: int):
        if not metadata.received_id:
            logger.debug(f"No receipt id for {metadata.original_filename}, upload not recorded")
            return
        record = DestinationUpload(
            received_id=metadata.received_id,
            filename=metadata.original_filename,
            destination=outcome["destination"],
            success=outcome["success"],
            result=outcome.get("result") if outcome["success"] else None,
            error=outcome.get("error"),
            duration_ms=duration_ms,
            timestamp=utcnow(),
        )
        try:
            self.database.insert(record)
        except Exception as e:
            logger.error(f"Failed to record upload of {metadata.original_filename} to {outcome['destination']}: {e}")

    @asynccontextmanager
    async def _track_upload(self, destination: BaseDestination, metadata: UploadMetadata) -> AsyncIterator[Dict[str, Any]]:
        """Active-upload entry scoped to one upload task"""
        name = destination.get_name()
        upload_id = f"{name}-{uuid4().hex[:12]}"
        entry = {
            "id": upload_id,
            "filename": metadata.original_filename,
            "receivedId": metadata.received_id,
            "startTime": utcnow(),
        }
        self._active_uploads.setdefault(name, {})[upload_id] = entry
        destination.begin_upload()
        self._publish(UPLOAD_START, destination=name, filename=metadata.original_filename, received_id=metadata.received_id)
        try:
            yield entry
        finally:
            bucket = self._active_uploads.get(name, {})
            bucket.pop(upload_id, None)
            if not bucket:
                self._active_uploads.pop(name, None)
            destination.end_upload()

    def get_active_uploads(self) -> Dict[str, List[Dict[str, Any]]]:
        return {name: [dict(entry) for entry in uploads.values()] for name, uploads in self._active_uploads.items()}

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    def retry_eligible_failures(self, received_id: str) -> List[str]:
        """Destinations of ``received_id`` that failed and have no success record"""
        return compute_retry_eligible(self.database.uploads_for(received_id))

    def _publish(self, event_type: str, **payload: Any):
        if self.event_bus is None:
            return
        try:
            self.event_bus.publish(event_type, **payload)
        except Exception as e:
            logger.warning(f"Failed to publish {event_type}: {e}")
