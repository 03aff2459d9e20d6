"""Staff user model"""
from sqlalchemy import Column, Integer, String, DateTime
from datetime import datetime, timezone
from mailcast.models.base import Base


class User(Base):
    """Staff accounts (source of the staff_members audience)"""
    __tablename__ = "users"
    
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(191), unique=True, nullable=True, index=True)
    name = Column(String(191), nullable=True)
    status = Column(String(50), default="active", nullable=False)  # active, inactive, locked
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
