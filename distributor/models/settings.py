"""Runtime settings document (persisted under the ``main`` settings key)"""

from typing import Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class SettingsModel(BaseModel):
    """Base for settings blocks: camelCase on disk, snake_case in code"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class FtpCredentials(SettingsModel):
    username: str = "pd"
    password: Optional[str] = None  # Generated on first start
    password_hash: Optional[str] = None


class DestinationConfig(SettingsModel):
    enabled: bool = False


class LocalDestinationConfig(DestinationConfig):
    enabled: bool = True
    photos_dir: str = "./photos"


class GoogleDriveConfig(DestinationConfig):
    root_folder_id: Optional[str] = None
    credentials_path: Optional[str] = "./config/google-drive-credentials.json"
    token_path: Optional[str] = "./config/google-drive-token.json"


class GooglePhotosConfig(DestinationConfig):
    credentials_path: Optional[str] = "./config/google-photos-credentials.json"
    token_path: Optional[str] = "./config/google-photos-token.json"


class PentaractConfig(DestinationConfig):
    api_url: str = "http://localhost:8547/api"
    email: Optional[str] = None
    password: Optional[str] = None
    storage_name: str = "Photo-Distributor"


class DestinationsConfig(SettingsModel):
    local: LocalDestinationConfig = Field(default_factory=LocalDestinationConfig)
    google_drive: GoogleDriveConfig = Field(default_factory=GoogleDriveConfig)
    google_photos: GooglePhotosConfig = Field(default_factory=GooglePhotosConfig)
    pentaract: PentaractConfig = Field(default_factory=PentaractConfig)


class DistributorSettings(SettingsModel):
    """Snapshot of the settings document. Callers keep the snapshot they were
    handed; ``SettingsService.reload()`` returns a fresh one."""

    ftp: FtpCredentials = Field(default_factory=FtpCredentials)
    # Delete the source artifact once at least one destination succeeded
    delete_after_upload: bool = True
    destinations: DestinationsConfig = Field(default_factory=DestinationsConfig)

    def to_document(self) -> Dict[str, Any]:
        """Persisted (camelCase) form"""
        return self.model_dump(by_alias=True, mode="json")

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "DistributorSettings":
        return cls.model_validate(document)
