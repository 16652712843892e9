"""Pentaract destination - Telegram-backed storage exposed over a REST API"""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiohttp

from distributor.destinations.base import UploadMetadata
from distributor.destinations.remote import RemoteDestination
from distributor.errors import AuthError, ConfigurationError, UploadError
from distributor.models.settings import PentaractConfig
from distributor.utils.logger import get_logger
from distributor.utils.paths import format_date_for_path

logger = get_logger(__name__)


class PentaractDestination(RemoteDestination):
    """
    Pentaract splits files in chunks and stores them in Telegram.

    Logs in with email/password, renews the access token with the refresh
    token and uploads into a named storage (created on first use).
    """

    name = "pentaract"

    def __init__(self, config: PentaractConfig, database=None, **kwargs):
        super().__init__(config, database, **kwargs)
        self.base_url = (config.api_url or "").rstrip("/")
        self.storage_name = config.storage_name
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self.storage_id: Optional[str] = None

    async def initialize(self):
        if not self.base_url:
            raise ConfigurationError("Pentaract requires apiUrl config")
        if not self.config.email or not self.config.password:
            raise ConfigurationError("Pentaract credentials not configured")

        stored = self.load_persisted_credentials()
        if stored:
            self.refresh_token = stored.get("refresh_token")

        await self.refresh_credentials()
        await self._ensure_storage()
        self.start_refresh_loop()
        logger.info(f"✅ Pentaract destination initialized (storage {self.storage_id})")

    async def _authenticate(self):
        """
        Log in with the configured credentials

        Raises:
            AuthError: If the login is rejected or the API is unreachable
        """
        session = await self._get_session()
        try:
            async with session.post(
                f"{self.base_url}/auth/login",
                json={"email": self.config.email, "password": self.config.password},
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    self._auth_failed = True
                    raise AuthError(f"Pentaract authentication failed: {response.status} - {error_text[:200]}")
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self._auth_failed = True
            raise AuthError(f"Pentaract authentication error: {e}") from e

        self._store_tokens(data)
        logger.info("✅ Authenticated with Pentaract")

    async def refresh_credentials(self):
        """Renew the access token, falling back to a full login"""
        if not self.refresh_token:
            return await self._authenticate()

        session = await self._get_session()
        try:
            async with session.post(
                f"{self.base_url}/auth/refresh", json={"refresh_token": self.refresh_token}
            ) as response:
                if response.status == 200:
                    self._store_tokens(await response.json(content_type=None))
                    logger.debug("Pentaract token refreshed")
                    return
                logger.warning(f"Token refresh failed with status {response.status}, re-authenticating")
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"Failed to refresh token: {e}, attempting re-authentication")

        await self._authenticate()

    def _store_tokens(self, data: Dict[str, Any]):
        self.access_token = data.get("access_token")
        # Some deployments rotate the refresh token
        if data.get("refresh_token"):
            self.refresh_token = data["refresh_token"]
        if not self.access_token:
            self._auth_failed = True
            raise AuthError("Pentaract returned no access token")
        self._auth_failed = False
        self.persist_credentials({"refresh_token": self.refresh_token})

    async def _auth_headers(self) -> Dict[str, str]:
        if self._auth_failed or not self.access_token:
            await self.refresh_credentials()
        return {"Authorization": f"Bearer {self.access_token}"}

    async def _list_storages(self) -> List[Dict[str, Any]]:
        data = await self._call("GET", f"{self.base_url}/storages")
        return data if isinstance(data, list) else []

    async def _ensure_storage(self):
        storages = await self._list_storages()
        logger.debug(f"Found {len(storages)} storages")

        existing = next((s for s in storages if s.get("name") == self.storage_name), None)
        if existing:
            self.storage_id = str(existing["id"])
            logger.info(f"Using existing storage: {self.storage_id}")
            return

        logger.info(f"Creating storage {self.storage_name}...")
        created = await self._call(
            "POST", f"{self.base_url}/storages", expected=(200, 201), json={"name": self.storage_name}
        )
        if not created or "id" not in created:
            raise ConfigurationError(f"Could not create Pentaract storage {self.storage_name}")
        self.storage_id = str(created["id"])
        logger.info(f"Created new storage: {self.storage_id}")

    async def upload(self, file_path: Path, metadata: UploadMetadata) -> Dict[str, Any]:
        year, folder = format_date_for_path(metadata.date or datetime.now())
        filename = metadata.target_filename
        remote_path = f"{year}/{folder}/{filename}"

        try:
            if not self.storage_id:
                await self._ensure_storage()
            content = await asyncio.to_thread(Path(file_path).read_bytes)

            def build_form():
                form = aiohttp.FormData()
                form.add_field("file", content, filename=filename, content_type=metadata.mime_type)
                form.add_field("path", remote_path)
                form.add_field("storage_id", self.storage_id)
                return form

            logger.info(f"Uploading {filename} ({len(content)} bytes) to Pentaract: {remote_path}")
            await self._call(
                "POST",
                f"{self.base_url}/files/upload",
                expected=(200, 201),
                parse="text",
                data_factory=build_form,
            )
        except (AuthError, ConfigurationError) as e:
            raise UploadError(f"Pentaract unavailable: {e}") from e
        except OSError as e:
            raise UploadError(f"Cannot read {file_path}: {e}") from e

        logger.info(f"✅ File uploaded successfully: {remote_path}")
        return {"path": remote_path, "size": len(content), "storageId": self.storage_id}

    async def is_ready(self) -> bool:
        """Health check: list storages"""
        try:
            await self._list_storages()
            return True
        except Exception as e:
            logger.debug(f"Pentaract health check failed: {e}")
            return False
