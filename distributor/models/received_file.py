"""Received file model"""

import time
from datetime import datetime
from typing import Optional, Dict, Any
from uuid import uuid4

from sqlmodel import SQLModel, Field

from distributor.models.types import utc_column
from distributor.utils.time_utils import utcnow, parse_timestamp, format_timestamp


def generate_received_id() -> str:
    """Generate a receipt id (e.g., recv-1705660200000-3f9a1c2b7)"""
    return f"recv-{int(time.time() * 1000)}-{uuid4().hex[:9]}"


class ReceivedFile(SQLModel, table=True):
    """One row per file accepted by the ingestion pipeline, never mutated"""

    __tablename__ = "received"

    id: str = Field(default_factory=generate_received_id, primary_key=True)
    filename: str
    size: Optional[int] = Field(default=None)
    mime_type: str = Field(default="application/octet-stream")
    content_hash: Optional[str] = Field(default=None, index=True)  # SHA-256 hex
    effective_date: Optional[datetime] = Field(default=None, sa_column=utc_column())  # Capture time, not receipt time
    received_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False, index=True))
    source_path: Optional[str] = Field(default=None)  # Kept so retries can reuse the artifact

    def to_legacy_dict(self) -> Dict[str, Any]:
        """Serialize in the camelCase shape of received.jsonl"""
        return {
            "type": "received",
            "id": self.id,
            "timestamp": format_timestamp(self.received_at),
            "filename": self.filename,
            "size": self.size,
            "mimeType": self.mime_type,
            "hash": self.content_hash,
            "fileDate": format_timestamp(self.effective_date),
            "sourcePath": self.source_path,
        }

    @classmethod
    def from_legacy_dict(cls, entry: Dict[str, Any]) -> "ReceivedFile":
        """Build a record from one received.jsonl line"""
        received_at = parse_timestamp(entry.get("timestamp")) or utcnow()
        return cls(
            id=entry.get("id") or generate_received_id(),
            filename=entry.get("filename") or "",
            size=entry.get("size"),
            mime_type=entry.get("mimeType") or "application/octet-stream",
            content_hash=entry.get("hash"),
            effective_date=parse_timestamp(entry.get("fileDate")),
            received_at=received_at,
            source_path=entry.get("sourcePath"),
        )
