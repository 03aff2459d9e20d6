"""Member and newsletter models"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Table
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from mailcast.models.base import Base


members_newsletters = Table(
    "members_newsletters",
    Base.metadata,
    Column("member_id", Integer, ForeignKey("members.id", ondelete="CASCADE"), primary_key=True),
    Column("newsletter_id", Integer, ForeignKey("newsletters.id", ondelete="CASCADE"), primary_key=True),
)


class Member(Base):
    """Site members (source of the newsletter_members and paid_members audiences)"""
    __tablename__ = "members"
    
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(191), nullable=True, index=True)
    name = Column(String(191), nullable=True)
    status = Column(String(50), default="free", nullable=False)  # free, paid, comped
    email_disabled = Column(Boolean, default=False, nullable=False)  # Set after hard bounces/complaints
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    
    newsletters = relationship("Newsletter", secondary=members_newsletters, back_populates="members")


class Newsletter(Base):
    """Newsletter a member can subscribe to"""
    __tablename__ = "newsletters"
    
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(191), nullable=False)
    status = Column(String(50), default="active", nullable=False)
    
    members = relationship("Member", secondary=members_newsletters, back_populates="newsletters")
