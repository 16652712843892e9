"""Structured logging setup using structlog"""

import copy
import logging
import os
import sys
from typing import Any, Dict, MutableMapping, Optional

import structlog

from distributor.config import AppConfig, config

REDACTED = "[REDACTED]"
NOT_SET = "[NOT_SET]"

# Keys whose values never reach a log line or an API response
SECRET_KEYS = {"password", "passwordHash", "password_hash", "accessToken", "refreshToken"}

# Libraries kept at ERROR whatever the configured level
QUIET_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "apscheduler",
    "aiohttp",
    "sqlalchemy",
    "PIL",  # every undecodable EXIF tag is logged at DEBUG
    "httpx",
    "httpcore",
    "asyncio",
)


def configure_third_party_loggers():
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.ERROR)


def redact_secret_fields(logger: Any, method_name: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """structlog processor masking secret keyword arguments of a log call"""
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key] is not None and not isinstance(event_dict[key], dict):
            event_dict[key] = REDACTED
    return event_dict


def resolve_log_level(app_config: AppConfig) -> int:
    """Production logs errors only unless LOG_LEVEL is set explicitly"""
    if app_config.environment == "production" and not os.getenv("LOG_LEVEL"):
        return logging.ERROR
    return getattr(logging, app_config.log_level.upper(), logging.ERROR)


def configure_logging(app_config: Optional[AppConfig] = None):
    """Configure structured logging with environment-aware settings"""
    log_level = resolve_log_level(app_config or config)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )
    configure_third_party_loggers()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            redact_secret_fields,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:
    """Get a logger instance"""
    return structlog.get_logger(name)


def redact_settings(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return a deep copy of a settings document with secrets masked.

    Args:
        data: Settings document in its persisted (camelCase) form

    Returns:
        Copy where every secret value is "[REDACTED]" or "[NOT_SET]"
    """
    def _walk(node: Any) -> Any:
        if isinstance(node, dict):
            masked = {}
            for key, value in node.items():
                if key in SECRET_KEYS and not isinstance(value, dict):
                    masked[key] = REDACTED if value else NOT_SET
                else:
                    masked[key] = _walk(value)
            return masked
        if isinstance(node, list):
            return [_walk(item) for item in node]
        return node

    return _walk(copy.deepcopy(data))


def log_settings_summary(logger: Any, settings: Any) -> None:
    """
    Log the active runtime settings without exposing credentials.

    Args:
        logger: Logger instance
        settings: DistributorSettings snapshot
    """
    destinations = settings.destinations
    logger.info(
        "settings_loaded",
        ftp_username=settings.ftp.username or NOT_SET,
        ftp_password=REDACTED if (settings.ftp.password or settings.ftp.password_hash) else NOT_SET,
        delete_after_upload=settings.delete_after_upload,
        local_enabled=destinations.local.enabled,
        google_drive_enabled=destinations.google_drive.enabled,
        google_photos_enabled=destinations.google_photos.enabled,
        pentaract_enabled=destinations.pentaract.enabled,
        pentaract_email=destinations.pentaract.email or NOT_SET,
        pentaract_password=REDACTED if destinations.pentaract.password else NOT_SET,
    )


# Configure logging on import
configure_logging()
