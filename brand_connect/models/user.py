"""User model definitions."""

from sqlalchemy import Column, Integer, String
from brand_connect.database import Base

CLIENT_ROLE = "client"
CREATIVE_ROLE = "creative"
ADMIN_ROLE = "admin"


class User(Base):
    """Represents an application user."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True)
    full_name = Column(String)
    role = Column(String)  # client/creative/admin
