"""File metadata: effective date, MIME type and content hash"""

import hashlib
import mimetypes
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError

from distributor.utils.logger import get_logger
from distributor.utils.time_utils import as_utc

logger = get_logger(__name__)

PHOTO_EXTENSIONS = frozenset([".jpg", ".jpeg", ".png", ".heic", ".heif", ".webp", ".tiff", ".tif", ".cr2", ".cr3"])
VIDEO_EXTENSIONS = frozenset([".mp4", ".mov", ".avi", ".mkv", ".m4v", ".3gp", ".wmv"])
SUPPORTED_EXTENSIONS = PHOTO_EXTENSIONS | VIDEO_EXTENSIONS

MIME_TYPES = {
    # Images
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".heic": "image/heic",
    ".heif": "image/heif",
    ".webp": "image/webp",
    ".tiff": "image/tiff",
    ".tif": "image/tiff",
    ".cr2": "image/x-canon-cr2",
    ".cr3": "image/x-canon-cr3",
    # Videos
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
    ".mkv": "video/x-matroska",
    ".m4v": "video/x-m4v",
    ".3gp": "video/3gpp",
    ".wmv": "video/x-ms-wmv",
}
DEFAULT_MIME_TYPE = "application/octet-stream"

# EXIF tags, most specific first
EXIF_IFD_POINTER = 0x8769
TAG_DATETIME_ORIGINAL = 0x9003
TAG_DATETIME_DIGITIZED = 0x9004
TAG_DATETIME = 0x0132
EXIF_DATE_FORMAT = "%Y:%m:%d %H:%M:%S"

HASH_CHUNK_SIZE = 1024 * 1024


def _parse_exif_date(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, bytes):
        value = value.decode("ascii", errors="ignore")
    try:
        return datetime.strptime(str(value).strip().rstrip("\x00")[:19], EXIF_DATE_FORMAT)
    except ValueError:
        return None


class MetadataExtractor:
    """Default metadata collaborator for the ingestion pipeline"""

    def extract_date(self, path: Path) -> datetime:
        """Capture time from EXIF when present, otherwise the file's birth/modification time.

        EXIF dates carry no offset and are read as local time; the result is aware UTC.
        """
        path = Path(path)
        if path.suffix.lower() in PHOTO_EXTENSIONS:
            exif_date = self._read_exif_date(path)
            if exif_date:
                return as_utc(exif_date)

        stat = path.stat()
        birth = getattr(stat, "st_birthtime", None)
        return datetime.fromtimestamp(birth if birth else stat.st_mtime, tz=timezone.utc)

    def _read_exif_date(self, path: Path) -> Optional[datetime]:
        try:
            with Image.open(path) as image:
                exif = image.getexif()
                exif_ifd = exif.get_ifd(EXIF_IFD_POINTER)
                for value in (
                    exif_ifd.get(TAG_DATETIME_ORIGINAL),
                    exif_ifd.get(TAG_DATETIME_DIGITIZED),
                    exif.get(TAG_DATETIME),
                ):
                    parsed = _parse_exif_date(value)
                    if parsed:
                        return parsed
        except (UnidentifiedImageError, OSError, ValueError) as e:
            logger.debug(f"No EXIF date for {path.name}: {e}")
        return None

    def resolve_mime_type(self, extension: str) -> str:
        extension = extension.lower()
        if extension in MIME_TYPES:
            return MIME_TYPES[extension]
        guessed, _ = mimetypes.guess_type(f"file{extension}")
        return guessed or DEFAULT_MIME_TYPE

    def compute_hash(self, path: Path) -> str:
        """SHA-256 hex digest of the file contents"""
        digest = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
                digest.update(chunk)
        return digest.hexdigest()
