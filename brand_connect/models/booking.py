"""Booking model definitions."""

from sqlalchemy import Column, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Time, text
from brand_connect.database import Base

PENDING = "pending"
CONFIRMED = "confirmed"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
CANCELLED = "cancelled"

BOOKING_STATUSES = (PENDING, CONFIRMED, IN_PROGRESS, COMPLETED, CANCELLED)

_ACTIVE_SLOT_PREDICATE = text("status IN ('pending', 'confirmed')")


class Booking(Base):
    """A client's reservation of a creative's time on a given date."""
    __tablename__ = "bookings"
    __table_args__ = (
        Index("idx_bookings_creative_date", "creative_id", "booking_date"),
        Index(
            "uq_bookings_active_slot",
            "creative_id",
            "booking_date",
            "start_time",
            unique=True,
            sqlite_where=_ACTIVE_SLOT_PREDICATE,
            postgresql_where=_ACTIVE_SLOT_PREDICATE,
        ),
    )

    id = Column(Integer, primary_key=True)
    client_id = Column(Integer, ForeignKey("users.id"))
    creative_id = Column(Integer, ForeignKey("users.id"))
    service_id = Column(Integer, ForeignKey("services.id"))
    booking_date = Column(Date)
    start_time = Column(Time)
    end_time = Column(Time)
    status = Column(String, default=PENDING)
    total_amount = Column(Numeric(12, 2))
    notes = Column(String)
    client_timezone = Column(String)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
