"""Google OAuth authorization for the Drive and Photos destinations"""

import asyncio
import json
import secrets
import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Type
from urllib.parse import urlencode

import aiohttp
from pydantic import BaseModel

from distributor.database import DatabaseService
from distributor.destinations.google import TOKEN_URL, GoogleOAuthDestination, read_client_secrets
from distributor.destinations.google_drive import GoogleDriveDestination
from distributor.destinations.google_photos import GooglePhotosDestination
from distributor.errors import AuthError, ConfigurationError, NotFoundError
from distributor.services.settings_service import SettingsService
from distributor.utils.logger import get_logger

logger = get_logger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"

# Consent has to come back within this window
PENDING_TTL_SECONDS = 600

# Route segment -> (settings key, destination class)
GOOGLE_SERVICES: Dict[str, Tuple[str, Type[GoogleOAuthDestination]]] = {
    GoogleDriveDestination.oauth_service: ("google_drive", GoogleDriveDestination),
    GooglePhotosDestination.oauth_service: ("google_photos", GooglePhotosDestination),
}


class PendingAuthorization(BaseModel):
    """Client data kept between the consent redirect and the callback"""

    service: str
    client_id: str
    client_secret: str
    redirect_uri: str
    token_path: str
    created_at: float


class GoogleAuthService:
    """
    Runs the authorization-code flow that gives the Google destinations a
    refresh token.

    ``start`` builds the consent URL for one service, ``complete`` exchanges the
    returned code at the token endpoint and stores the tokens where the
    destinations look for them: the configured token file and the
    ``token:<destination>`` settings entry.
    """

    def __init__(self, settings_service: SettingsService, database: DatabaseService, timeout_seconds: float = 30):
        self.settings_service = settings_service
        self.database = database
        self.timeout_seconds = timeout_seconds
        self._pending: Dict[str, PendingAuthorization] = {}
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_seconds))
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    @staticmethod
    def _lookup(service: str) -> Tuple[str, Type[GoogleOAuthDestination]]:
        if service not in GOOGLE_SERVICES:
            raise NotFoundError(f"Unknown Google service: {service}")
        return GOOGLE_SERVICES[service]

    def _stored_tokens(self, destination_class: Type[GoogleOAuthDestination]) -> Dict[str, Any]:
        return self.database.get_setting(f"token:{destination_class.name}") or {}

    async def get_status(self) -> Dict[str, Dict[str, bool]]:
        """Credentials and token presence per Google service"""
        settings = await self.settings_service.reload()
        status: Dict[str, Dict[str, bool]] = {}
        for service, (key, destination_class) in GOOGLE_SERVICES.items():
            config = getattr(settings.destinations, key)
            has_credentials = bool(config.credentials_path) and Path(config.credentials_path).is_file()
            has_token = (bool(config.token_path) and Path(config.token_path).is_file()) or bool(
                self._stored_tokens(destination_class).get("refresh_token")
            )
            status[service] = {
                "enabled": config.enabled,
                "hasCredentials": has_credentials,
                "hasToken": has_token,
                "authenticated": has_credentials and has_token,
            }
        return status

    def _expire_pending(self):
        cutoff = time.monotonic() - PENDING_TTL_SECONDS
        for state in [s for s, pending in self._pending.items() if pending.created_at < cutoff]:
            del self._pending[state]

    async def start(self, service: str, redirect_uri: str) -> str:
        """
        Build the consent URL for ``service`` ("drive" or "photos")

        Raises:
            NotFoundError: Unknown service
            ConfigurationError: Missing paths or unusable client secrets file
        """
        key, destination_class = self._lookup(service)
        settings = await self.settings_service.reload()
        config = getattr(settings.destinations, key)
        if not config.credentials_path or not config.token_path:
            raise ConfigurationError(f"{destination_class.name} requires credentialsPath and tokenPath config")

        client = await asyncio.to_thread(read_client_secrets, Path(config.credentials_path), destination_class.name)

        self._expire_pending()
        state = f"{service}.{secrets.token_urlsafe(16)}"
        self._pending[state] = PendingAuthorization(
            service=service,
            client_id=client["client_id"],
            client_secret=client["client_secret"],
            redirect_uri=redirect_uri,
            token_path=config.token_path,
            created_at=time.monotonic(),
        )

        query = urlencode(
            {
                "client_id": client["client_id"],
                "redirect_uri": redirect_uri,
                "response_type": "code",
                "scope": " ".join(destination_class.oauth_scopes),
                "access_type": "offline",
                "prompt": "consent",
                "state": state,
            }
        )
        logger.info(f"🔑 Google {service} authorization started")
        return f"{AUTH_URL}?{query}"

    async def complete(self, state: str, code: str) -> str:
        """
        Exchange an authorization code and store the tokens

        Returns:
            The service the code was issued for

        Raises:
            AuthError: Unknown or expired state, or a rejected exchange
        """
        self._expire_pending()
        pending = self._pending.pop(state, None)
        if pending is None:
            raise AuthError("Invalid or expired authorization session")
        _, destination_class = GOOGLE_SERVICES[pending.service]

        payload = {
            "code": code,
            "client_id": pending.client_id,
            "client_secret": pending.client_secret,
            "redirect_uri": pending.redirect_uri,
            "grant_type": "authorization_code",
        }
        session = await self._get_session()
        try:
            async with session.post(TOKEN_URL, data=payload) as response:
                body = await response.json(content_type=None)
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise AuthError(f"Token exchange for Google {pending.service} failed: {e}") from e

        if status != 200 or not isinstance(body, dict) or "access_token" not in body:
            reason = body.get("error_description") or body.get("error") if isinstance(body, dict) else body
            raise AuthError(f"Token exchange for Google {pending.service} rejected ({status}): {reason}")

        # A repeated consent may omit the refresh token; keep the one already stored
        tokens = self._stored_tokens(destination_class)
        for key in ("access_token", "refresh_token", "scope", "token_type"):
            if body.get(key):
                tokens[key] = body[key]
        if body.get("expires_in"):
            tokens["expiry_date"] = int(time.time() * 1000) + int(body["expires_in"]) * 1000

        self.database.put_setting(f"token:{destination_class.name}", tokens)
        await asyncio.to_thread(self._write_token_file, Path(pending.token_path), tokens)
        logger.info(f"✅ Google {pending.service} authorized")
        return pending.service

    @staticmethod
    def _write_token_file(path: Path, tokens: Dict[str, Any]):
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(tokens, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not write token file {path}, the stored copy is used: {e}")
