"""CampaignBatch model"""
from enum import Enum
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from mailcast.models.base import Base


class BatchStatus(str, Enum):
    PENDING = "pending"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    FAILED = "failed"


FINALIZED_BATCH_STATUSES = (BatchStatus.SUBMITTED.value, BatchStatus.FAILED.value)


class CampaignBatch(Base):
    """One provider submission of up to CAMPAIGN_BATCH_SIZE recipients"""
    __tablename__ = "campaign_batches"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(String(32), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True)
    batch_index = Column(Integer, nullable=False)  # Zero-based, contiguous per campaign
    status = Column(String(50), default=BatchStatus.PENDING.value, nullable=False)
    resend_batch_id = Column(String(255), nullable=True)
    recipient_count = Column(Integer, default=0, nullable=False)
    sent_count = Column(Integer, default=0, nullable=False)
    failed_count = Column(Integer, default=0, nullable=False)
    error = Column(Text, nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    campaign = relationship("Campaign", back_populates="batches")
    recipients = relationship("CampaignRecipient", back_populates="batch")

    __table_args__ = (
        UniqueConstraint('campaign_id', 'batch_index', name='uq_campaign_batches_campaign_index'),
    )
