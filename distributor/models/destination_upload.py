"""Destination upload record model"""

from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy import Column, JSON, Index
from sqlmodel import SQLModel, Field

from distributor.models.types import utc_column
from distributor.utils.time_utils import utcnow, parse_timestamp, format_timestamp


class DestinationUpload(SQLModel, table=True):
    """One row per upload attempt of a received file to a destination.

    Rows are append-only. The autoincrement ``seq`` is the append order used to
    derive the latest status of a (file, destination) pair.
    """

    __tablename__ = "destination_uploads"
    __table_args__ = (
        Index("idx_upload_received_destination", "received_id", "destination"),
    )

    seq: Optional[int] = Field(default=None, primary_key=True)
    received_id: str = Field(index=True)
    filename: Optional[str] = Field(default=None)
    destination: str = Field(index=True)
    success: bool
    result: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = Field(default=None)
    duration_ms: Optional[int] = Field(default=None)
    timestamp: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False, index=True))

    def to_legacy_dict(self) -> Dict[str, Any]:
        """Serialize in the camelCase shape of destinations.jsonl"""
        entry: Dict[str, Any] = {
            "type": "destination",
            "receivedId": self.received_id,
            "timestamp": format_timestamp(self.timestamp),
            "filename": self.filename,
            "destination": self.destination,
            "success": self.success,
            "duration": self.duration_ms,
        }
        if self.success:
            entry["result"] = self.result
        else:
            entry["error"] = self.error
        return entry

    @classmethod
    def from_legacy_dict(cls, entry: Dict[str, Any]) -> "DestinationUpload":
        """Build a record from one destinations.jsonl line"""
        return cls(
            received_id=entry.get("receivedId") or "",
            filename=entry.get("filename"),
            destination=entry.get("destination") or "unknown",
            success=bool(entry.get("success")),
            result=entry.get("result"),
            error=entry.get("error"),
            duration_ms=entry.get("duration"),
            timestamp=parse_timestamp(entry.get("timestamp")) or utcnow(),
        )
