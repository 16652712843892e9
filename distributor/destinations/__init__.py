"""Upload destinations"""

from typing import Dict, List, Type

from distributor.config import AppConfig
from distributor.destinations.base import BaseDestination, UploadMetadata
from distributor.destinations.google_drive import GoogleDriveDestination
from distributor.destinations.google_photos import GooglePhotosDestination
from distributor.destinations.local import LocalDestination
from distributor.destinations.pentaract import PentaractDestination
from distributor.destinations.remote import RemoteDestination
from distributor.models.settings import DistributorSettings

# Settings key (snake_case field of DestinationsConfig) -> implementation
DESTINATION_TYPES: Dict[str, Type[BaseDestination]] = {
    "local": LocalDestination,
    "google_drive": GoogleDriveDestination,
    "google_photos": GooglePhotosDestination,
    "pentaract": PentaractDestination,
}


def build_destinations(settings: DistributorSettings, config: AppConfig, store=None) -> List[BaseDestination]:
    """Instantiate one destination per enabled configuration block"""
    destinations: List[BaseDestination] = []
    for key, destination_class in DESTINATION_TYPES.items():
        destination_config = getattr(settings.destinations, key)
        if not destination_config.enabled:
            continue
        if issubclass(destination_class, RemoteDestination):
            destinations.append(
                destination_class(
                    destination_config,
                    store,
                    refresh_interval_minutes=config.token_refresh_interval_minutes,
                    timeout_seconds=config.upload_timeout_seconds,
                )
            )
        else:
            destinations.append(destination_class(destination_config))
    return destinations


__all__ = [
    "BaseDestination",
    "UploadMetadata",
    "LocalDestination",
    "GoogleDriveDestination",
    "GooglePhotosDestination",
    "PentaractDestination",
    "DESTINATION_TYPES",
    "build_destinations",
]
