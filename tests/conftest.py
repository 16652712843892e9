"""Pytest configuration and shared fixtures"""

import asyncio
import os
from pathlib import Path
from typing import Generator, Optional

import pytest

from distributor.config import AppConfig
from distributor.database import DatabaseService
from distributor.destinations.base import BaseDestination, UploadMetadata
from distributor.models.settings import DestinationConfig
from distributor.services.destination_manager import DestinationManager
from distributor.services.event_bus import EventBus
from distributor.services.settings_service import SettingsService


@pytest.fixture(autouse=True)
def reset_env_vars() -> Generator[None, None, None]:
    """Reset environment variables before each test"""
    # Store original env vars
    original_env = os.environ.copy()

    # Clear distributor-related env vars
    distributor_vars = [
        "ENVIRONMENT",
        "NODE_ENV",
        "LOG_LEVEL",
        "DATA_DIR",
        "CONFIG_DIR",
        "LOG_DIR",
        "UPLOAD_DIR",
        "PHOTOS_DIR",
        "DATABASE_URL",
    ]

    for var in distributor_vars:
        os.environ.pop(var, None)

    yield

    # Restore original env vars
    os.environ.clear()
    os.environ.update(original_env)


class FakeDestination(BaseDestination):
    """Scriptable destination recording every upload it receives"""

    def __init__(
        self,
        name: str,
        enabled: bool = True,
        fail_with: Optional[Exception] = None,
        init_error: Optional[Exception] = None,
        delay: float = 0,
    ):
        super().__init__(DestinationConfig(enabled=enabled))
        self.name = name
        self.fail_with = fail_with
        self.init_error = init_error
        self.delay = delay
        self.initialized = False
        self.cleanups = 0
        self.uploads = []
        self.release: Optional[asyncio.Event] = None
        self.started = asyncio.Event()

    async def initialize(self):
        if self.init_error:
            raise self.init_error
        self.initialized = True

    async def upload(self, file_path: Path, metadata: UploadMetadata):
        self.uploads.append((Path(file_path), metadata))
        self.started.set()
        if self.release is not None:
            await self.release.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with:
            raise self.fail_with
        return {"path": f"{self.name}/{metadata.target_filename}"}

    async def is_ready(self) -> bool:
        return self.enabled

    async def cleanup(self):
        self.cleanups += 1


@pytest.fixture
def fake_destination():
    """Factory for FakeDestination instances"""
    return FakeDestination


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    """Config with every directory under tmp_path"""
    return AppConfig(
        ENVIRONMENT="test",
        log_level="debug",
        data_dir=tmp_path / "data",
        config_dir=tmp_path / "config",
        log_dir=tmp_path / "logs",
        upload_dir=tmp_path / "uploads",
        photos_dir=tmp_path / "photos",
        database_url=f"sqlite:///{(tmp_path / 'data' / 'test.db').as_posix()}",
    )


@pytest.fixture
def database(app_config) -> Generator[DatabaseService, None, None]:
    """Opened record store backed by a temporary SQLite file"""
    db = DatabaseService(app_config)
    db.open()
    yield db
    db.close()


@pytest.fixture
def settings_service(database) -> SettingsService:
    return SettingsService(database)


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def manager(database, event_bus) -> DestinationManager:
    return DestinationManager(database, event_bus)


@pytest.fixture
def sample_file(tmp_path) -> Path:
    """A small file standing in for a received photo"""
    upload_dir = tmp_path / "uploads"
    upload_dir.mkdir(parents=True, exist_ok=True)
    path = upload_dir / "1700000000000-IMG_0001.JPG"
    path.write_bytes(b"not really a jpeg but good enough")
    return path
