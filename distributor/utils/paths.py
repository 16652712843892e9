"""Date-partitioned placement helpers shared by the local destination and
the ingestion fallback"""

from datetime import datetime
from pathlib import Path
from typing import Tuple


def format_date_for_path(date: datetime) -> Tuple[str, str]:
    """Return (year, folder) for a date, e.g. ("2024", "2024-01-19")

    Aware dates are partitioned by their local calendar day.
    """
    if date.tzinfo is not None:
        date = date.astimezone()
    year = f"{date.year:04d}"
    return year, f"{year}-{date.month:02d}-{date.day:02d}"


def unique_destination_path(dest_dir: Path, filename: str) -> Path:
    """
    First free path for ``filename`` inside ``dest_dir``

    Collisions get a numeric suffix: IMG_0001.JPG, IMG_0001_1.JPG, IMG_0001_2.JPG, ...
    """
    candidate = dest_dir / filename
    stem = Path(filename).stem
    suffix = Path(filename).suffix
    counter = 1
    while candidate.exists():
        candidate = dest_dir / f"{stem}_{counter}{suffix}"
        counter += 1
    return candidate
