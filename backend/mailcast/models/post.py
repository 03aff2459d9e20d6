"""Post model (content sent by campaigns)"""
from sqlalchemy import Column, Integer, String, Text, DateTime
from datetime import datetime, timezone
from mailcast.models.base import Base


class Post(Base):
    """Published content item"""
    __tablename__ = "posts"
    
    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(2000), nullable=True)
    email_subject = Column(String(300), nullable=True)  # Overrides title as email subject
    html = Column(Text, nullable=True)
    plaintext = Column(Text, nullable=True)
    status = Column(String(50), default="draft", nullable=False)  # draft, scheduled, published
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
