import enum
from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import relationship

from ..database import Base


class Role(str, enum.Enum):
    """Closed set of account roles."""

    ADMIN = "admin"
    USER = "user"
    OWNER = "owner"


class User(Base):
    """SQLAlchemy model for application users."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(60), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    address = Column(String(400), nullable=True)
    role = Column(String(20), default=Role.USER.value, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    stores = relationship("Store", back_populates="owner")
    ratings = relationship("Rating", back_populates="user")
