"""Google Photos destination"""

import asyncio
from pathlib import Path
from typing import Any, Dict

from distributor.destinations.base import UploadMetadata
from distributor.destinations.google import GoogleOAuthDestination
from distributor.errors import AuthError, UploadError
from distributor.models.settings import GooglePhotosConfig
from distributor.utils.logger import get_logger

logger = get_logger(__name__)

UPLOADS_URL = "https://photoslibrary.googleapis.com/v1/uploads"
BATCH_CREATE_URL = "https://photoslibrary.googleapis.com/v1/mediaItems:batchCreate"


class GooglePhotosDestination(GoogleOAuthDestination):
    """Two-step upload: raw bytes for an upload token, then mediaItems:batchCreate"""

    name = "google-photos"
    oauth_service = "photos"
    oauth_scopes = ("https://www.googleapis.com/auth/photoslibrary.appendonly",)

    def __init__(self, config: GooglePhotosConfig, database=None, **kwargs):
        super().__init__(config, database, **kwargs)

    async def upload(self, file_path: Path, metadata: UploadMetadata) -> Dict[str, Any]:
        filename = metadata.target_filename

        try:
            content = await asyncio.to_thread(Path(file_path).read_bytes)
            upload_token = await self._call(
                "POST",
                UPLOADS_URL,
                parse="text",
                data_factory=lambda: content,
                headers={
                    "Content-Type": "application/octet-stream",
                    "X-Goog-Upload-Content-Type": metadata.mime_type,
                    "X-Goog-Upload-Protocol": "raw",
                    "X-Goog-Upload-File-Name": filename,
                },
            )
            if not upload_token or not upload_token.strip():
                raise UploadError("Google Photos returned an empty upload token")

            data = await self._call(
                "POST",
                BATCH_CREATE_URL,
                json={
                    "newMediaItems": [
                        {
                            "description": filename,
                            "simpleMediaItem": {"uploadToken": upload_token.strip(), "fileName": filename},
                        }
                    ]
                },
            )
        except AuthError as e:
            raise UploadError(f"Authentication failed: {e}") from e
        except OSError as e:
            raise UploadError(f"Cannot read {file_path}: {e}") from e

        results = data.get("newMediaItemResults") or []
        if not results:
            raise UploadError("Google Photos returned no media item result")

        status = results[0].get("status") or {}
        media_item = results[0].get("mediaItem")
        if not media_item or status.get("code"):
            raise UploadError(f"Media item creation failed: {status.get('message', 'unknown error')}")

        logger.info(f"✅ Uploaded {filename} to Google Photos")
        return {
            "mediaItemId": media_item.get("id"),
            "productUrl": media_item.get("productUrl"),
            "filename": media_item.get("filename", filename),
        }
