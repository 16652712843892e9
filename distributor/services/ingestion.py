"""Ingestion pipeline: turns a received byte stream into a tracked, distributed file"""

import asyncio
import inspect
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from distributor.config import AppConfig
from distributor.database import DatabaseService
from distributor.destinations.base import UploadMetadata
from distributor.models.received_file import ReceivedFile, generate_received_id
from distributor.services.destination_manager import DestinationManager
from distributor.services.event_bus import FILE_RECEIVED, FILE_REJECTED, EventBus
from distributor.services.metadata import DEFAULT_MIME_TYPE, SUPPORTED_EXTENSIONS, MetadataExtractor
from distributor.services.settings_service import SettingsService
from distributor.utils.logger import get_logger
from distributor.utils.paths import format_date_for_path, unique_destination_path
from distributor.utils.time_utils import as_utc, utcnow

logger = get_logger(__name__)

WRITE_CHUNK_SIZE = 1024 * 1024


class IngestResult(BaseModel):
    """Outcome of processing one received file"""

    filename: str
    accepted: bool
    received_id: Optional[str] = None
    content_hash: Optional[str] = None
    duplicate: bool = False
    fallback_path: Optional[str] = None
    uploads: List[Dict[str, Any]] = Field(default_factory=list)
    source_deleted: bool = False

    @property
    def succeeded(self) -> List[str]:
        return [upload["destination"] for upload in self.uploads if upload["success"]]

    @property
    def failed(self) -> List[str]:
        return [upload["destination"] for upload in self.uploads if not upload["success"]]


class IngestionPipeline:
    """Receives files from the transfer channel and hands them to the orchestrator"""

    def __init__(
        self,
        database: DatabaseService,
        manager: DestinationManager,
        settings_service: SettingsService,
        app_config: AppConfig,
        event_bus: Optional[EventBus] = None,
        metadata: Optional[MetadataExtractor] = None,
    ):
        self.database = database
        self.manager = manager
        self.settings_service = settings_service
        self.config = app_config
        self.event_bus = event_bus
        self.metadata = metadata or MetadataExtractor()
        self._tasks: Set[asyncio.Task] = set()

    @staticmethod
    def accepts(filename: str) -> bool:
        return Path(filename).suffix.lower() in SUPPORTED_EXTENSIONS

    def temp_path_for(self, filename: str) -> Path:
        return Path(self.config.upload_dir) / f"{int(time.time() * 1000)}-{Path(filename).name}"

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def receive(self, filename: str, stream: Any) -> bool:
        """
        Entry point for the transfer channel

        Writes the stream to a temporary file and schedules processing in the
        background. Only the extension check is reported back.

        Args:
            filename: Name supplied by the client (directories are stripped)
            stream: bytes, a file object (sync or async read), or an (async) iterable of bytes

        Returns:
            False if the file was rejected or could not be written
        """
        basename = Path(filename).name
        if not self.accepts(basename):
            logger.debug(f"Ignoring unsupported file {basename}")
            self._publish(FILE_REJECTED, filename=basename, reason="unsupported extension")
            return False

        temp_path = self.temp_path_for(basename)
        try:
            await self._write_stream(stream, temp_path)
        except Exception as e:
            logger.error(f"Failed to write {basename} to {temp_path}: {e}")
            self._remove(temp_path)
            return False

        task = asyncio.create_task(self._process_in_background(temp_path, basename))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _write_stream(self, stream: Any, path: Path):
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            if isinstance(stream, (bytes, bytearray, memoryview)):
                f.write(stream)
            elif hasattr(stream, "read"):
                while True:
                    chunk = stream.read(WRITE_CHUNK_SIZE)
                    if inspect.isawaitable(chunk):
                        chunk = await chunk
                    if not chunk:
                        break
                    f.write(chunk)
            elif hasattr(stream, "__aiter__"):
                async for chunk in stream:
                    f.write(chunk)
            else:
                for chunk in stream:
                    f.write(chunk)

    async def _process_in_background(self, path: Path, filename: str):
        try:
            await self.process_file(path, filename)
        except Exception as e:
            # Fatal for this file only; the channel keeps running
            logger.error(f"Processing of {filename} failed: {e}", exc_info=True)

    async def process_file(self, path: Path, filename: Optional[str] = None) -> IngestResult:
        """
        Process one file already on disk

        Unsupported extensions are deleted silently. Otherwise the receipt is
        recorded before any upload starts, then the file is either placed under
        the fallback photos directory (no destinations enabled) or fanned out to
        all enabled destinations.
        """
        path = Path(path)
        filename = Path(filename or path.name).name
        extension = Path(filename).suffix.lower()

        if extension not in SUPPORTED_EXTENSIONS:
            self._remove(path)
            self._publish(FILE_REJECTED, filename=filename, reason="unsupported extension")
            return IngestResult(filename=filename, accepted=False)

        content_hash = await self._compute_hash(path)
        effective_date = await self._resolve_date(path)
        mime_type = self._resolve_mime_type(extension)
        size = self._file_size(path)

        duplicate = bool(content_hash) and self.database.has_content_hash(content_hash)
        if duplicate:
            logger.info(f"Duplicate content for {filename} (hash {content_hash[:12]}), recording anyway")

        fallback_target: Optional[Path] = None
        if not self.manager.get_enabled_destinations():
            year, folder = format_date_for_path(effective_date)
            fallback_target = unique_destination_path(Path(self.config.photos_dir) / year / folder, filename)

        received = ReceivedFile(
            id=generate_received_id(),
            filename=filename,
            size=size,
            mime_type=mime_type,
            content_hash=content_hash,
            effective_date=effective_date,
            received_at=utcnow(),
            source_path=str(fallback_target or path),
        )
        try:
            self.database.insert(received)
        except Exception as e:
            logger.error(f"Failed to record receipt of {filename}, file kept at {path}: {e}")
            raise

        logger.info(f"📥 Received {filename} ({size} bytes, {received.id})")
        self._publish(
            FILE_RECEIVED,
            received_id=received.id,
            filename=filename,
            size=size,
            mime_type=mime_type,
            duplicate=duplicate,
        )

        result = IngestResult(
            filename=filename,
            accepted=True,
            received_id=received.id,
            content_hash=content_hash,
            duplicate=duplicate,
        )

        if fallback_target is not None:
            await self._place_fallback(path, fallback_target)
            result.fallback_path = str(fallback_target)
            return result

        metadata = UploadMetadata(
            received_id=received.id,
            original_filename=filename,
            destination_filename=filename,
            date=effective_date,
            mime_type=mime_type,
            extension=extension,
        )
        result.uploads = await self.manager.upload_to_all(path, metadata)

        if result.succeeded:
            logger.info(f"📤 Uploaded {filename} to {len(result.succeeded)} destination(s)")
        if result.failed:
            logger.warning(f"⚠️ Failed to upload {filename} to: {', '.join(result.failed)}")

        settings = await self.settings_service.reload()
        if settings.delete_after_upload and result.succeeded:
            result.source_deleted = self._remove(path)

        return result

    async def drain(self):
        """Wait for in-flight background processing"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _compute_hash(self, path: Path) -> Optional[str]:
        try:
            return await asyncio.to_thread(self.metadata.compute_hash, path)
        except Exception as e:
            logger.warning(f"Could not hash {path.name}: {e}")
            return None

    async def _resolve_date(self, path: Path) -> datetime:
        try:
            return as_utc(await asyncio.to_thread(self.metadata.extract_date, path))
        except Exception as e:
            logger.warning(f"Date extraction failed for {path.name}, using modification time: {e}")
        try:
            return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        except OSError:
            return utcnow()

    def _resolve_mime_type(self, extension: str) -> str:
        try:
            return self.metadata.resolve_mime_type(extension)
        except Exception as e:
            logger.warning(f"MIME lookup failed for {extension}: {e}")
            return DEFAULT_MIME_TYPE

    @staticmethod
    def _file_size(path: Path) -> Optional[int]:
        try:
            return path.stat().st_size
        except OSError:
            return None

    async def _place_fallback(self, path: Path, target: Path):
        def move():
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(path), str(target))

        try:
            await asyncio.to_thread(move)
            logger.info(f"No destinations enabled, moved {path.name} to {target}")
        except OSError as e:
            logger.error(f"Fallback placement of {path.name} failed: {e}")

    @staticmethod
    def _remove(path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error(f"Failed to delete source file {path}: {e}")
            return False

    def _publish(self, event_type: str, **payload: Any):
        if self.event_bus is None:
            return
        try:
            self.event_bus.publish(event_type, **payload)
        except Exception as e:
            logger.warning(f"Failed to publish {event_type}: {e}")
