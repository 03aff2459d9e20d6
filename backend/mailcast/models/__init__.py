"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from mailcast.models.base import Base
from mailcast.models.user import User
from mailcast.models.member import Member, Newsletter, members_newsletters
from mailcast.models.post import Post
from mailcast.models.campaign import Campaign
from mailcast.models.campaign_batch import CampaignBatch
from mailcast.models.campaign_recipient import CampaignRecipient
from mailcast.models.campaign_event import CampaignEvent

# Export all for convenience
__all__ = [
    "Base", "User", "Member", "Newsletter", "members_newsletters", "Post",
    "Campaign", "CampaignBatch", "CampaignRecipient", "CampaignEvent"
]
