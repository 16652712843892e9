"""Key/value settings entry model"""

from datetime import datetime
from typing import Dict, Any

from sqlalchemy import Column, JSON
from sqlmodel import SQLModel, Field

from distributor.models.types import utc_column
from distributor.utils.time_utils import utcnow


class SettingEntry(SQLModel, table=True):
    """Settings collection row: ``main`` holds the settings document,
    ``token:<destination>`` holds refreshed remote credentials"""

    __tablename__ = "settings"

    key: str = Field(primary_key=True, description="Entry key (e.g., 'main')")
    value: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))
