"""Settings service for the persisted runtime settings document"""

import asyncio
import copy
import secrets
import string
from typing import Any, Dict

import bcrypt

from distributor.database import DatabaseService
from distributor.models.settings import DistributorSettings
from distributor.utils.logger import get_logger

logger = get_logger(__name__)

SETTINGS_KEY = "main"
PASSWORD_ALPHABET = string.ascii_letters + string.digits


def generate_password(length: int = 12) -> str:
    """Generate a random password using only letters and numbers"""
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=10)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """bcrypt comparison that treats a malformed hash as a mismatch"""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except (ValueError, TypeError):
        return False


def deep_merge(target: Dict[str, Any], source: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``source`` over ``target``; nested dicts merge, everything else replaces"""
    result = copy.deepcopy(target)
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


class SettingsService:
    """Loads, merges and persists the single settings document"""

    def __init__(self, database: DatabaseService):
        self.database = database
        self._lock = asyncio.Lock()

    def defaults(self) -> DistributorSettings:
        """Hard-coded defaults every loaded document is merged over"""
        return DistributorSettings()

    async def load(self) -> DistributorSettings:
        """Load the document merged over defaults, creating it on first boot"""
        saved = self.database.get_setting(SETTINGS_KEY)

        if saved is None:
            settings = self.defaults()
            settings.ftp.password = generate_password()
            logger.info(
                "🔑 Generated FTP credentials",
                username=settings.ftp.username,
                initial_password=settings.ftp.password,
            )
            return await self.save(settings)

        merged = deep_merge(self.defaults().to_document(), saved)
        settings = DistributorSettings.from_document(merged)

        if settings.ftp.password and not settings.ftp.password_hash:
            # Plaintext-only documents are upgraded to carry a hash
            settings = await self.save(settings)

        return settings

    async def save(self, settings: DistributorSettings) -> DistributorSettings:
        """Persist a full document, (re)hashing a changed plaintext password"""
        settings = settings.model_copy(deep=True)
        ftp = settings.ftp
        if ftp.password:
            needs_hashing = not ftp.password_hash
            if not needs_hashing:
                needs_hashing = not await asyncio.to_thread(verify_password, ftp.password, ftp.password_hash)
            if needs_hashing:
                ftp.password_hash = await asyncio.to_thread(hash_password, ftp.password)

        self.database.put_setting(SETTINGS_KEY, settings.to_document())
        return settings

    async def update(self, updates: Dict[str, Any]) -> DistributorSettings:
        """
        Merge a partial (camelCase) document into the current settings and persist it

        Args:
            updates: Partial document, e.g. {"destinations": {"local": {"enabled": False}}}

        Returns:
            The full updated settings snapshot
        """
        async with self._lock:
            current = await self.load()
            merged = deep_merge(current.to_document(), updates)
            updated = await self.save(DistributorSettings.from_document(merged))
            logger.debug("Settings updated", keys=sorted(updates.keys()))
            return updated

    async def reload(self) -> DistributorSettings:
        """Fresh snapshot from the store"""
        return await self.load()
