"""Availability model definitions."""

from sqlalchemy import Column, Integer, DateTime, ForeignKey, JSON, String
from brand_connect.database import Base


class CreativeAvailability(Base):
    """Weekly recurring schedule of a creative.

    ``recurring_availability`` maps a day key ("0" is Sunday) to
    ``{"start": "HH:mm", "end": "HH:mm", "isAvailable": bool}``.
    """
    __tablename__ = "creative_availability"

    id = Column(Integer, primary_key=True)
    creative_id = Column(Integer, ForeignKey("users.id"), unique=True, index=True)
    recurring_availability = Column(JSON, default=dict)
    buffer_time = Column(Integer, default=30)
    timezone = Column(String)
    updated_at = Column(DateTime)
