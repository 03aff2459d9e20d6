"""CampaignRecipient model and delivery status lifecycle"""
from enum import Enum
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from mailcast.models.base import Base


class RecipientType(str, Enum):
    STAFF_MEMBER = "staff_member"
    MEMBER = "member"


class RecipientStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    FAILED = "failed"


# Forward order of the delivery lifecycle; failed sits outside it
STATUS_RANK = {
    RecipientStatus.PENDING.value: 0,
    RecipientStatus.SENT.value: 1,
    RecipientStatus.DELIVERED.value: 2,
    RecipientStatus.OPENED.value: 3,
    RecipientStatus.CLICKED.value: 4,
}

# Status -> timestamp column stamped the first time the status is reached
STATUS_TIMESTAMP_FIELDS = {
    RecipientStatus.SENT.value: "sent_at",
    RecipientStatus.DELIVERED.value: "delivered_at",
    RecipientStatus.OPENED.value: "opened_at",
    RecipientStatus.CLICKED.value: "clicked_at",
    RecipientStatus.FAILED.value: "failed_at",
}


def can_transition(current: str, new: str) -> bool:
    """Recipients move forward through the lifecycle or sideways into failed; failed is final"""
    if current == RecipientStatus.FAILED.value:
        return False
    if new == RecipientStatus.FAILED.value:
        return True
    return STATUS_RANK.get(new, -1) > STATUS_RANK.get(current, -1)


class CampaignRecipient(Base):
    """One addressee of a campaign"""
    __tablename__ = "campaign_recipients"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(String(32), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False)
    batch_id = Column(Integer, ForeignKey("campaign_batches.id"), nullable=True)  # Set once at submission
    member_id = Column(Integer, ForeignKey("members.id", ondelete="SET NULL"), nullable=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    email = Column(String(191), nullable=False)  # Trimmed, lowercase
    name = Column(String(191), nullable=True)
    recipient_type = Column(String(50), nullable=False)  # staff_member, member
    status = Column(String(50), default=RecipientStatus.PENDING.value, nullable=False)
    resend_email_id = Column(String(255), nullable=True, index=True)  # Never cleared once set
    last_error = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    opened_at = Column(DateTime(timezone=True), nullable=True)
    clicked_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    read_duration_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    campaign = relationship("Campaign", back_populates="recipients")
    batch = relationship("CampaignBatch", back_populates="recipients")

    __table_args__ = (
        UniqueConstraint('campaign_id', 'email', name='uq_campaign_recipients_campaign_email'),
        Index('ix_campaign_recipients_campaign_status', 'campaign_id', 'status'),
    )
