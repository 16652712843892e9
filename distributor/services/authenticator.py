"""Credential check for the ingestion channel"""

import asyncio
import hmac

from distributor.errors import LoginBlockedError
from distributor.services.rate_limiter import LoginRateLimiter
from distributor.services.settings_service import SettingsService, verify_password
from distributor.utils.logger import get_logger

logger = get_logger(__name__)


class FtpAuthenticator:
    """Validates transfer-channel logins against the current settings"""

    def __init__(self, settings_service: SettingsService, rate_limiter: LoginRateLimiter):
        self.settings_service = settings_service
        self.rate_limiter = rate_limiter

    async def authenticate(self, username: str, password: str, source: str) -> bool:
        """
        Check a login attempt

        Args:
            username: Supplied username
            password: Supplied password
            source: Source address of the connection

        Returns:
            True if the credentials match

        Raises:
            LoginBlockedError: If the source is currently rate limited
        """
        if self.rate_limiter.is_blocked(source):
            logger.warning(f"Rejected login from blocked source {source}")
            raise LoginBlockedError(source)

        # Reloaded on every attempt so credential changes apply immediately
        settings = await self.settings_service.reload()
        ftp = settings.ftp

        if ftp.password_hash:
            password_matches = await asyncio.to_thread(verify_password, password, ftp.password_hash)
        elif ftp.password and ftp.password.startswith("$2"):
            password_matches = await asyncio.to_thread(verify_password, password, ftp.password)
        elif ftp.password:
            password_matches = hmac.compare_digest(password.encode("utf-8"), ftp.password.encode("utf-8"))
        else:
            password_matches = False

        if username == ftp.username and password_matches:
            self.rate_limiter.record_success(source)
            logger.info(f"✅ User {username} authenticated from {source}")
            return True

        self.rate_limiter.record_failure(source)
        logger.info(f"❌ Authentication failed for user {username} from {source}")
        return False
