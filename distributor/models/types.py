"""Column types shared by the tables"""

from datetime import timezone

from sqlalchemy import Column, DateTime
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """DateTime that always binds and loads aware UTC values.

    SQLite keeps no offset, so values are normalised to UTC before storage and
    tagged as UTC again when read back. Naive input is taken as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utc_column(nullable: bool = True, index: bool = False) -> Column:
    """A fresh UTC timestamp column (Column objects cannot be shared between tables)"""
    return Column(UTCDateTime(), nullable=nullable, index=index)
