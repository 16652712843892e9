"""OAuth2 token handling shared by the Google destinations"""

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import aiohttp

from distributor.destinations.remote import RemoteDestination
from distributor.errors import AuthError, ConfigurationError
from distributor.utils.logger import get_logger

logger = get_logger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"

# Refresh this long before the access token actually expires
EXPIRY_MARGIN_MS = 60_000


def read_client_secrets(path: Path, owner: str) -> Dict[str, Any]:
    """The installed/web OAuth client block of a Google client secrets file"""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigurationError(f"Credentials file not found: {path}")
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot read credentials file {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigurationError(f"Credentials file {path} is not a JSON object")
    if data.get("type") == "service_account":
        raise ConfigurationError(f"{owner} needs OAuth client credentials; service account keys are not supported")

    client = data.get("installed") or data.get("web")
    if not client or not client.get("client_id") or not client.get("client_secret"):
        raise ConfigurationError(f"Credentials file {path} has no installed/web OAuth client")
    return client


class GoogleOAuthDestination(RemoteDestination):
    """
    Installed/web OAuth client with a stored refresh token.

    Token material is looked up in the store first (``token:<name>``) and in
    the configured token file second; every refresh writes both back.
    """

    # Path segment of the authorization routes and the scopes requested there
    oauth_service = ""
    oauth_scopes: Tuple[str, ...] = ()

    def __init__(self, config, database=None, refresh_interval_minutes: float = 45, timeout_seconds: float = 300):
        super().__init__(config, database, refresh_interval_minutes, timeout_seconds)
        self.credentials_path: Optional[Path] = Path(config.credentials_path) if config.credentials_path else None
        self.token_path: Optional[Path] = Path(config.token_path) if config.token_path else None
        self._client_id: Optional[str] = None
        self._client_secret: Optional[str] = None
        self._tokens: Dict[str, Any] = {}

    async def initialize(self):
        if not self.credentials_path:
            raise ConfigurationError(f"{self.name} requires credentialsPath config")
        if not self.token_path:
            raise ConfigurationError(f"{self.name} requires tokenPath config")

        client = await asyncio.to_thread(read_client_secrets, self.credentials_path, self.name)
        self._client_id = client["client_id"]
        self._client_secret = client["client_secret"]
        self._tokens = await asyncio.to_thread(self._load_tokens)

        if self._token_expiring():
            await self.refresh_credentials()

        await self._prepare()
        self.start_refresh_loop()
        logger.info(f"✅ {self.name} destination initialized")

    async def _prepare(self):
        """Hook for provider-specific setup after authentication"""

    def _load_tokens(self) -> Dict[str, Any]:
        tokens: Dict[str, Any] = {}
        if self.token_path.exists():
            try:
                tokens.update(json.loads(self.token_path.read_text(encoding="utf-8")))
            except (OSError, ValueError) as e:
                logger.warning(f"Ignoring unreadable token file {self.token_path}: {e}")

        stored = self.load_persisted_credentials()
        if stored:
            tokens.update(stored)

        if not tokens.get("refresh_token") and not tokens.get("access_token"):
            raise ConfigurationError(
                f"No token for {self.name}. Authorize it from /api/auth/google/{self.oauth_service}/start"
            )
        return tokens

    def _write_token_file(self, tokens: Dict[str, Any]):
        try:
            self.token_path.parent.mkdir(parents=True, exist_ok=True)
            self.token_path.write_text(json.dumps(tokens, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not write token file {self.token_path}: {e}")

    def _token_expiring(self) -> bool:
        if not self._tokens.get("access_token"):
            return True
        expiry = self._tokens.get("expiry_date")
        if expiry is None:
            return False
        return int(expiry) - EXPIRY_MARGIN_MS <= int(time.time() * 1000)

    async def refresh_credentials(self):
        refresh_token = self._tokens.get("refresh_token")
        if not refresh_token:
            self._auth_failed = True
            raise AuthError(f"No refresh token for {self.name}; authorize again")

        payload = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        session = await self._get_session()
        try:
            async with session.post(TOKEN_URL, data=payload) as response:
                body = await response.json(content_type=None)
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self._auth_failed = True
            raise AuthError(f"Token refresh for {self.name} failed: {e}") from e

        if status != 200 or not isinstance(body, dict) or "access_token" not in body:
            self._auth_failed = True
            reason = body.get("error_description") or body.get("error") if isinstance(body, dict) else body
            raise AuthError(f"Token refresh for {self.name} rejected ({status}): {reason}")

        self._tokens["access_token"] = body["access_token"]
        if body.get("expires_in"):
            self._tokens["expiry_date"] = int(time.time() * 1000) + int(body["expires_in"]) * 1000
        if body.get("refresh_token"):
            self._tokens["refresh_token"] = body["refresh_token"]
        for key in ("scope", "token_type"):
            if body.get(key):
                self._tokens[key] = body[key]
        self._auth_failed = False

        self.persist_credentials(dict(self._tokens))
        await asyncio.to_thread(self._write_token_file, dict(self._tokens))
        logger.debug(f"Access token refreshed for {self.name}")

    async def _auth_headers(self) -> Dict[str, str]:
        if self._auth_failed or self._token_expiring():
            await self.refresh_credentials()
        return {"Authorization": f"Bearer {self._tokens['access_token']}"}

    async def is_ready(self) -> bool:
        try:
            if self._auth_failed or self._token_expiring():
                await self.refresh_credentials()
            return bool(self._tokens.get("access_token"))
        except Exception as e:
            logger.debug(f"{self.name} not ready: {e}")
            return False
