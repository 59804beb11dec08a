"""Creative service model definitions."""

from sqlalchemy import Column, Integer, ForeignKey, Numeric, String
from brand_connect.database import Base


class Service(Base):
    """A bookable offering of a creative; its duration sizes the slots."""
    __tablename__ = "services"

    id = Column(Integer, primary_key=True)
    creative_id = Column(Integer, ForeignKey("users.id"), index=True)
    title = Column(String)
    duration_minutes = Column(Integer)
    price = Column(Numeric(12, 2))
