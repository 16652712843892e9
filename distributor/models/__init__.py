"""Models module"""

from distributor.models.received_file import ReceivedFile, generate_received_id
from distributor.models.destination_upload import DestinationUpload
from distributor.models.setting_entry import SettingEntry
from distributor.models.settings import DistributorSettings

__all__ = [
    "ReceivedFile",
    "generate_received_id",
    "DestinationUpload",
    "SettingEntry",
    "DistributorSettings",
]
