"""Database models for the local cache."""
from sqlalchemy import Column, String, Text

from tipsync.models.base import Base, TimestampMixin


class CacheEntry(Base, TimestampMixin):
    """A serialized snapshot of one part of the room state."""

    __tablename__ = "cache_entries"

    key = Column(String, primary_key=True)
    payload = Column(Text, nullable=False)  # JSON document

    def __repr__(self) -> str:
        return f"CacheEntry(key={self.key!r}, bytes={len(self.payload or '')})"
