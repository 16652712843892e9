"""Google Drive destination organizing uploads in date folders"""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import aiohttp

from distributor.destinations.base import UploadMetadata
from distributor.destinations.google import GoogleOAuthDestination
from distributor.errors import AuthError, UploadError
from distributor.models.settings import GoogleDriveConfig
from distributor.utils.logger import get_logger
from distributor.utils.paths import format_date_for_path

logger = get_logger(__name__)

FILES_URL = "https://www.googleapis.com/drive/v3/files"
UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
DEFAULT_ROOT_FOLDER = "Photos"


def _escape_query(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class GoogleDriveDestination(GoogleOAuthDestination):
    """Uploads into ``<root>/<yyyy>/<yyyy-mm-dd>/``; root defaults to a top-level "Photos" folder"""

    name = "google-drive"
    oauth_service = "drive"
    oauth_scopes = ("https://www.googleapis.com/auth/drive.file",)

    def __init__(self, config: GoogleDriveConfig, database=None, **kwargs):
        super().__init__(config, database, **kwargs)
        self.root_folder_id: Optional[str] = config.root_folder_id
        self._folder_cache: Dict[str, str] = {}

    async def _prepare(self):
        if not self.root_folder_id:
            self.root_folder_id = await self._find_or_create_folder(DEFAULT_ROOT_FOLDER, None)
            logger.info(f"Using Drive folder {DEFAULT_ROOT_FOLDER} ({self.root_folder_id})")

    async def _find_or_create_folder(self, name: str, parent_id: Optional[str]) -> str:
        cache_key = f"{parent_id or 'root'}/{name}"
        if cache_key in self._folder_cache:
            return self._folder_cache[cache_key]

        query = f"name = '{_escape_query(name)}' and mimeType = '{FOLDER_MIME_TYPE}' and trashed = false"
        if parent_id:
            query += f" and '{parent_id}' in parents"
        data = await self._call(
            "GET", FILES_URL, params={"q": query, "fields": "files(id, name)", "spaces": "drive"}
        )
        found = data.get("files") or []

        if found:
            folder_id = found[0]["id"]
        else:
            folder = {"name": name, "mimeType": FOLDER_MIME_TYPE}
            if parent_id:
                folder["parents"] = [parent_id]
            created = await self._call("POST", FILES_URL, params={"fields": "id"}, json=folder)
            folder_id = created["id"]
            logger.info(f"Created Drive folder {name} ({folder_id})")

        self._folder_cache[cache_key] = folder_id
        return folder_id

    async def upload(self, file_path: Path, metadata: UploadMetadata) -> Dict[str, Any]:
        year, folder = format_date_for_path(metadata.date or datetime.now())
        filename = metadata.target_filename

        try:
            content = await asyncio.to_thread(Path(file_path).read_bytes)
            year_id = await self._find_or_create_folder(year, self.root_folder_id)
            folder_id = await self._find_or_create_folder(folder, year_id)

            def build_body():
                writer = aiohttp.MultipartWriter("related")
                writer.append_json({"name": filename, "parents": [folder_id]})
                writer.append(content, {"Content-Type": metadata.mime_type})
                return writer

            data = await self._call(
                "POST",
                UPLOAD_URL,
                params={"uploadType": "multipart", "fields": "id,name,webViewLink,webContentLink"},
                data_factory=build_body,
            )
        except AuthError as e:
            raise UploadError(f"Authentication failed: {e}") from e
        except OSError as e:
            raise UploadError(f"Cannot read {file_path}: {e}") from e

        logger.info(f"✅ Uploaded {filename} to Drive {year}/{folder}")
        return {
            "fileId": data.get("id"),
            "fileName": data.get("name", filename),
            "webViewLink": data.get("webViewLink"),
            "webContentLink": data.get("webContentLink"),
            "folderId": folder_id,
            "folderPath": f"{year}/{folder}",
        }

    async def cleanup(self):
        self._folder_cache.clear()
        await super().cleanup()
