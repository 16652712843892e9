"""Base destination class - all upload destinations must extend this"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel

from distributor.models.settings import DestinationConfig


class UploadMetadata(BaseModel):
    """What a destination knows about the file it uploads"""

    received_id: Optional[str] = None
    original_filename: str
    destination_filename: Optional[str] = None
    date: Optional[datetime] = None  # Effective date, drives date partitioning
    mime_type: str = "application/octet-stream"
    extension: str = ""

    @property
    def target_filename(self) -> str:
        return self.destination_filename or self.original_filename


class BaseDestination(ABC):
    """
    Upload target contract.

    - ``initialize()`` raises ConfigurationError when required settings are
      missing and AuthError when credential exchange fails.
    - ``upload()`` raises UploadError with a human-readable cause and returns a
      destination-specific result dict on success.
    - ``is_ready()`` never raises.
    - ``cleanup()`` only releases resources, is idempotent and never raises.
    """

    name = "base"

    def __init__(self, config: Optional[DestinationConfig] = None):
        self.config = config or DestinationConfig(enabled=True)
        self.enabled = self.config.enabled
        self._active_uploads = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @abstractmethod
    async def initialize(self) -> None:
        """Authenticate and prepare the destination"""

    @abstractmethod
    async def upload(self, file_path: Path, metadata: UploadMetadata) -> Dict[str, Any]:
        """Upload a file, returning destination-specific pointers (id, link, path)"""

    @abstractmethod
    async def is_ready(self) -> bool:
        """Check whether the destination can accept uploads"""

    async def cleanup(self) -> None:
        """Release timers, connections and caches"""

    def get_name(self) -> str:
        return self.name

    # In-flight bookkeeping, used to retire a replaced instance only once idle

    def begin_upload(self):
        self._active_uploads += 1
        self._idle.clear()

    def end_upload(self):
        self._active_uploads = max(0, self._active_uploads - 1)
        if self._active_uploads == 0:
            self._idle.set()

    async def wait_idle(self):
        await self._idle.wait()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} enabled={self.enabled}>"
