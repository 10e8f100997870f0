"""
SQLAlchemy Models for the TourDash data layer

The hosted database owns every business table (creators, clients,
projects, analytics...). Locally we only persist what must survive a
process restart: the preference cache.
"""

from datetime import datetime

from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text,
    Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class PreferenceRecord(Base):
    """
    Durable key/value record with its own TTL.

    Holds user preferences, dashboard view state and recent searches.
    ``stored_at`` is a unix timestamp so the age can be computed after a
    restart; ``value`` is JSON text.
    """
    __tablename__ = "preference_cache"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(64), nullable=False, default="")
    key = Column(String(128), nullable=False)

    value = Column(Text, nullable=False)
    stored_at = Column(Float, nullable=False)
    ttl_seconds = Column(Float, nullable=False)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("owner_id", "key", name="uq_preference_owner_key"),
        Index("idx_preference_owner", "owner_id"),
    )

    def __repr__(self) -> str:
        return f"<PreferenceRecord {self.owner_id}/{self.key}>"
