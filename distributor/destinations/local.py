"""Local filesystem destination organizing files by date"""

import asyncio
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from distributor.destinations.base import BaseDestination, UploadMetadata
from distributor.errors import ConfigurationError, UploadError
from distributor.models.settings import LocalDestinationConfig
from distributor.utils.logger import get_logger
from distributor.utils.paths import format_date_for_path, unique_destination_path

logger = get_logger(__name__)


class LocalDestination(BaseDestination):
    """Copies files into ``<photosDir>/<yyyy>/<yyyy-mm-dd>/``"""

    name = "local"

    def __init__(self, config: Optional[LocalDestinationConfig] = None):
        super().__init__(config or LocalDestinationConfig())
        self.photos_dir: Optional[Path] = Path(self.config.photos_dir) if self.config.photos_dir else None

    async def initialize(self):
        if not self.photos_dir:
            raise ConfigurationError("Local destination requires photosDir config")
        try:
            await asyncio.to_thread(self.photos_dir.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot create photos directory {self.photos_dir}: {e}") from e

    async def is_ready(self) -> bool:
        try:
            return bool(self.photos_dir) and self.photos_dir.is_dir()
        except OSError:
            return False

    async def upload(self, file_path: Path, metadata: UploadMetadata) -> Dict[str, Any]:
        """Copy (not move) so the file stays available to the other destinations"""
        try:
            return await asyncio.to_thread(self._copy_into_place, Path(file_path), metadata)
        except OSError as e:
            raise UploadError(f"Local copy failed: {e}") from e

    def _copy_into_place(self, file_path: Path, metadata: UploadMetadata) -> Dict[str, Any]:
        year, folder = format_date_for_path(metadata.date or datetime.now())
        dest_dir = self.photos_dir / year / folder
        dest_dir.mkdir(parents=True, exist_ok=True)

        dest_path = unique_destination_path(dest_dir, metadata.target_filename or file_path.name)
        shutil.copy2(file_path, dest_path)
        logger.debug(f"Copied {file_path.name} -> {dest_path}")

        return {
            "destinationPath": str(dest_path),
            "folderPath": f"{year}/{folder}",
            "filename": dest_path.name,
        }
