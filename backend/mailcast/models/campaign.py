"""Campaign model and lifecycle enums"""
import uuid
from enum import Enum
from sqlalchemy import Column, Integer, String, Text, DateTime, Float, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from mailcast.models.base import Base


class Audience(str, Enum):
    """Named recipient selectors"""
    STAFF_MEMBERS = "staff_members"
    NEWSLETTER_MEMBERS = "newsletter_members"
    PAID_MEMBERS = "paid_members"

    @classmethod
    def values(cls):
        return [a.value for a in cls]


class CampaignStatus(str, Enum):
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"  # Set externally by operators


def _new_campaign_id() -> str:
    return uuid.uuid4().hex


class Campaign(Base):
    """One send of one post to one audience"""
    __tablename__ = "campaigns"

    # Globally unique string id: it feeds provider idempotency keys
    id = Column(String(32), primary_key=True, default=_new_campaign_id)
    post_id = Column(Integer, ForeignKey("posts.id", ondelete="CASCADE"), nullable=False, index=True)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    audience = Column(String(50), nullable=False)
    status = Column(String(50), default=CampaignStatus.AWAITING_CONFIRMATION.value, nullable=False)

    estimated_recipient_count = Column(Integer, default=0, nullable=False)
    recipient_count = Column(Integer, default=0, nullable=False)
    sent_count = Column(Integer, default=0, nullable=False)
    delivered_count = Column(Integer, default=0, nullable=False)
    opened_count = Column(Integer, default=0, nullable=False)
    clicked_count = Column(Integer, default=0, nullable=False)
    failed_count = Column(Integer, default=0, nullable=False)
    progress_pct = Column(Float, default=0, nullable=False)
    average_read_duration_ms = Column(Integer, nullable=True)

    confirmation_token = Column(String(191), unique=True, nullable=False)
    confirmation_expires_at = Column(DateTime(timezone=True), nullable=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    scheduled_for = Column(DateTime(timezone=True), nullable=True)  # UTC
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    dispatch_claimed_at = Column(DateTime(timezone=True), nullable=True)  # Held by the active dispatch run
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    post = relationship("Post")
    batches = relationship("CampaignBatch", back_populates="campaign", cascade="all, delete-orphan")
    recipients = relationship("CampaignRecipient", back_populates="campaign", cascade="all, delete-orphan")
    events = relationship("CampaignEvent", back_populates="campaign", cascade="all, delete-orphan")

    __table_args__ = (
        Index('ix_campaigns_post_created', 'post_id', 'created_at'),
        Index('ix_campaigns_status_scheduled_for', 'status', 'scheduled_for'),
    )
