"""Shared plumbing for HTTP-backed destinations"""

import asyncio
from typing import Any, Callable, Dict, Optional, Tuple

import aiohttp

from distributor.destinations.base import BaseDestination
from distributor.errors import UploadError
from distributor.models.settings import DestinationConfig
from distributor.utils.logger import get_logger

logger = get_logger(__name__)


class RemoteDestination(BaseDestination):
    """
    Base for remote sinks.

    Owns one aiohttp session and a background task that refreshes credentials
    every ``refresh_interval_minutes``. Refreshed credentials are persisted
    under the ``token:<name>`` settings key so a restart resumes from them.
    """

    def __init__(
        self,
        config: DestinationConfig,
        database=None,
        refresh_interval_minutes: float = 45,
        timeout_seconds: float = 300,
    ):
        super().__init__(config)
        self.database = database
        self.refresh_interval_minutes = refresh_interval_minutes
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._running = False
        self._auth_failed = False

    @property
    def token_key(self) -> str:
        return f"token:{self.name}"

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def refresh_credentials(self) -> None:
        """Renew credential material; raise AuthError on failure"""
        raise NotImplementedError

    async def _auth_headers(self) -> Dict[str, str]:
        return {}

    async def _call(
        self,
        method: str,
        url: str,
        *,
        expected: Tuple[int, ...] = (200,),
        parse: str = "json",
        data_factory: Optional[Callable[[], Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> Any:
        """
        Authenticated request with one refresh-and-retry on 401

        Args:
            expected: Status codes treated as success
            parse: "json" or "text"
            data_factory: Builds a fresh request body per attempt

        Raises:
            UploadError: Transport failure, timeout or unexpected status
            AuthError: Credentials could not be refreshed
        """
        session = await self._get_session()
        for attempt in range(2):
            request_headers = {**(headers or {}), **(await self._auth_headers())}
            if data_factory is not None:
                kwargs["data"] = data_factory()
            try:
                async with session.request(method, url, headers=request_headers, **kwargs) as response:
                    if response.status == 401 and attempt == 0:
                        logger.info(f"{self.name} rejected the access token, refreshing")
                        await self.refresh_credentials()
                        continue
                    if response.status not in expected:
                        body = await response.text()
                        raise UploadError(f"HTTP {response.status}: {body[:200]}")
                    if parse == "text":
                        return await response.text()
                    try:
                        return await response.json(content_type=None)
                    except ValueError as e:
                        raise UploadError(f"{self.name} returned a non-JSON body: {e}") from e
            except asyncio.TimeoutError as e:
                raise UploadError(f"{self.name} request timed out") from e
            except aiohttp.ClientError as e:
                raise UploadError(f"{self.name} request failed: {e}") from e
        raise UploadError(f"{self.name} request failed after credential refresh")

    def start_refresh_loop(self):
        if self._refresh_task and not self._refresh_task.done():
            return
        self._running = True
        self._refresh_task = asyncio.create_task(self._periodic_refresh())
        logger.debug(f"Credential refresh every {self.refresh_interval_minutes} min for {self.name}")

    async def _periodic_refresh(self):
        while self._running:
            try:
                await asyncio.sleep(self.refresh_interval_minutes * 60)
                await self.refresh_credentials()
                self._auth_failed = False
                logger.info(f"🔄 Refreshed credentials for {self.name}")
            except asyncio.CancelledError:
                break
            except Exception as e:
                # Not fatal: the next upload retries the refresh lazily
                self._auth_failed = True
                logger.warning(f"Credential refresh failed for {self.name}: {e}")

    def load_persisted_credentials(self) -> Optional[Dict[str, Any]]:
        if self.database is None:
            return None
        try:
            return self.database.get_setting(self.token_key)
        except Exception as e:
            logger.warning(f"Could not read stored credentials for {self.name}: {e}")
            return None

    def persist_credentials(self, data: Dict[str, Any]):
        if self.database is None:
            return
        try:
            self.database.put_setting(self.token_key, data)
        except Exception as e:
            logger.warning(f"Could not persist credentials for {self.name}: {e}")

    async def cleanup(self):
        self._running = False
        if self._refresh_task:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Refresh task for {self.name} ended with {e}")
            self._refresh_task = None

        if self._session:
            try:
                await self._session.close()
            except Exception as e:
                logger.debug(f"Closing session for {self.name} failed: {e}")
            self._session = None
