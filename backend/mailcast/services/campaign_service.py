"""Campaign service - create, confirm, read, sync and export campaigns for a post"""
import csv
import hmac
import io
import logging
import math
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from mailcast.core.config import Settings, get_resend_config
from mailcast.core.errors import InvalidInput
from mailcast.db import campaign_store
from mailcast.models.campaign import Campaign, CampaignStatus
from mailcast.models.campaign_recipient import CampaignRecipient
from mailcast.services.audience_service import AudienceResolver, validate_audience
from mailcast.services.content_service import get_published_post
from mailcast.utils.time import as_utc, isoformat_or_none, parse_local_datetime, utcnow

logger = logging.getLogger(__name__)

CSV_HEADER = [
    "email", "name", "recipient_type", "status", "sent_at", "delivered_at", "opened_at",
    "clicked_at", "failed_at", "read_duration_ms", "last_error", "resend_email_id",
]

CAMPAIGN_PAGE_DEFAULT = 20
CAMPAIGN_PAGE_MAX = 100
RECIPIENT_PAGE_DEFAULT = 100
RECIPIENT_PAGE_MAX = 200


def clamp_limit(limit: Optional[int], default: int, maximum: int) -> int:
    if limit is None:
        return default
    return max(1, min(int(limit), maximum))


def pagination_meta(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "pages": math.ceil(total / limit) if total else 0,
        "total": total,
    }


def serialize_campaign(campaign: Campaign, include_token: bool = False) -> Dict[str, Any]:
    data = {
        "id": campaign.id,
        "post_id": campaign.post_id,
        "created_by_id": campaign.created_by_id,
        "audience": campaign.audience,
        "status": campaign.status,
        "estimated_recipient_count": campaign.estimated_recipient_count,
        "recipient_count": campaign.recipient_count,
        "sent_count": campaign.sent_count,
        "delivered_count": campaign.delivered_count,
        "opened_count": campaign.opened_count,
        "clicked_count": campaign.clicked_count,
        "failed_count": campaign.failed_count,
        "progress_pct": campaign.progress_pct,
        "average_read_duration_ms": campaign.average_read_duration_ms,
        "confirmation_expires_at": isoformat_or_none(campaign.confirmation_expires_at),
        "confirmed_at": isoformat_or_none(campaign.confirmed_at),
        "scheduled_for": isoformat_or_none(campaign.scheduled_for),
        "started_at": isoformat_or_none(campaign.started_at),
        "completed_at": isoformat_or_none(campaign.completed_at),
        "last_synced_at": isoformat_or_none(campaign.last_synced_at),
        "error": campaign.error,
        "created_at": isoformat_or_none(campaign.created_at),
        "updated_at": isoformat_or_none(campaign.updated_at),
    }
    if include_token:
        data["confirmation_token"] = campaign.confirmation_token
    return data


def serialize_recipient(recipient: CampaignRecipient) -> Dict[str, Any]:
    return {
        "id": recipient.id,
        "email": recipient.email,
        "name": recipient.name,
        "recipient_type": recipient.recipient_type,
        "member_id": recipient.member_id,
        "user_id": recipient.user_id,
        "status": recipient.status,
        "resend_email_id": recipient.resend_email_id,
        "last_error": recipient.last_error,
        "sent_at": isoformat_or_none(recipient.sent_at),
        "delivered_at": isoformat_or_none(recipient.delivered_at),
        "opened_at": isoformat_or_none(recipient.opened_at),
        "clicked_at": isoformat_or_none(recipient.clicked_at),
        "failed_at": isoformat_or_none(recipient.failed_at),
        "read_duration_ms": recipient.read_duration_ms,
        "created_at": isoformat_or_none(recipient.created_at),
    }


def _csv_value(value) -> str:
    if value is None:
        return ""
    if hasattr(value, "isoformat"):
        return isoformat_or_none(value)
    return str(value)


class CampaignService:
    """Operations behind the campaign API; every one is scoped to a post"""

    def __init__(self, resolver: AudienceResolver, scheduler, synchronizer, config: Settings):
        self.resolver = resolver
        self.scheduler = scheduler
        self.synchronizer = synchronizer
        self.config = config

    def estimate_recipients(self, post_id: int, audience: str, db: Session) -> Dict[str, Any]:
        get_published_post(post_id, db)
        validate_audience(audience)
        return {"audience": audience, "recipient_count": self.resolver.count(audience, db)}

    def create_campaign(
        self,
        post_id: int,
        audience: str,
        db: Session,
        scheduled_at_local: Optional[str] = None,
        created_by_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """Create a campaign awaiting confirmation.

        The returned payload is the only place the confirmation token is ever exposed.

        Raises:
            NotFound: Post missing
            InvalidInput: Unpublished post, bad audience, bad schedule time, empty audience
            ConfigurationError: Resend not configured
        """
        get_published_post(post_id, db)
        validate_audience(audience)
        get_resend_config(self.config)
        scheduled_for = parse_local_datetime(scheduled_at_local, self.config.CAMPAIGN_SCHEDULE_TIMEZONE)

        recipient_count = self.resolver.count(audience, db)
        if recipient_count == 0:
            raise InvalidInput("No eligible recipients for the selected audience.")

        now = utcnow()
        campaign = Campaign(
            post_id=post_id,
            created_by_id=created_by_id,
            audience=audience,
            status=CampaignStatus.AWAITING_CONFIRMATION.value,
            estimated_recipient_count=recipient_count,
            confirmation_token=secrets.token_hex(24),
            confirmation_expires_at=now + timedelta(minutes=self.config.CAMPAIGN_CONFIRMATION_TTL_MINUTES),
            scheduled_for=scheduled_for,
            created_at=now,
            updated_at=now
        )
        db.add(campaign)
        db.commit()
        db.refresh(campaign)

        logger.info(
            f"Created campaign {campaign.id} for post {post_id} ({audience}, {recipient_count} recipient(s))"
        )
        return serialize_campaign(campaign, include_token=True)

    def confirm_campaign(self, post_id: int, campaign_id: str, confirmation_token: str, db: Session) -> Dict[str, Any]:
        """Confirm a campaign by token; unscheduled campaigns start dispatching right away.

        Must be called from inside the event loop since it may start a dispatch run.
        """
        get_published_post(post_id, db)
        campaign = campaign_store.get_campaign_for_post(post_id, campaign_id, db)

        if campaign.status != CampaignStatus.AWAITING_CONFIRMATION.value:
            raise InvalidInput("Campaign is not awaiting confirmation.")
        if not confirmation_token or not hmac.compare_digest(
            str(confirmation_token).encode(), campaign.confirmation_token.encode()
        ):
            raise InvalidInput("Invalid confirmation token.")

        now = utcnow()
        if now >= as_utc(campaign.confirmation_expires_at):
            raise InvalidInput("Confirmation token has expired.")

        get_resend_config(self.config)

        scheduled_for = as_utc(campaign.scheduled_for)
        if scheduled_for and scheduled_for > now:
            moved = campaign_store.transition_campaign(
                campaign_id,
                [CampaignStatus.AWAITING_CONFIRMATION.value],
                CampaignStatus.SCHEDULED.value,
                db,
                confirmed_at=now
            )
        else:
            moved = campaign_store.transition_campaign(
                campaign_id,
                [CampaignStatus.AWAITING_CONFIRMATION.value],
                CampaignStatus.RUNNING.value,
                db,
                confirmed_at=now,
                started_at=now
            )
        if not moved:
            raise InvalidInput("Campaign is not awaiting confirmation.")

        db.expire_all()
        campaign = campaign_store.get_campaign_for_post(post_id, campaign_id, db)
        result = serialize_campaign(campaign)

        if campaign.status == CampaignStatus.RUNNING.value:
            self.scheduler.dispatch_now(campaign_id)
        return result

    def browse_campaigns(self, post_id: int, db: Session, page: int = 1, limit: Optional[int] = None) -> Dict[str, Any]:
        get_published_post(post_id, db)
        limit = clamp_limit(limit, CAMPAIGN_PAGE_DEFAULT, CAMPAIGN_PAGE_MAX)
        page = max(1, int(page or 1))

        rows, total = campaign_store.list_campaigns_for_post(post_id, db, limit=limit, offset=(page - 1) * limit)
        return {
            "campaigns": [serialize_campaign(c) for c in rows],
            "meta": {"pagination": pagination_meta(page, limit, total)},
        }

    def read_campaign(self, post_id: int, campaign_id: str, db: Session) -> Dict[str, Any]:
        get_published_post(post_id, db)
        return serialize_campaign(campaign_store.get_campaign_for_post(post_id, campaign_id, db))

    def browse_recipients(
        self,
        post_id: int,
        campaign_id: str,
        db: Session,
        page: int = 1,
        limit: Optional[int] = None
    ) -> Dict[str, Any]:
        get_published_post(post_id, db)
        campaign_store.get_campaign_for_post(post_id, campaign_id, db)
        limit = clamp_limit(limit, RECIPIENT_PAGE_DEFAULT, RECIPIENT_PAGE_MAX)
        page = max(1, int(page or 1))

        total = campaign_store.count_recipients(campaign_id, db)
        rows = campaign_store.list_recipients(campaign_id, db, limit=limit, offset=(page - 1) * limit)
        return {
            "recipients": [serialize_recipient(r) for r in rows],
            "meta": {"pagination": pagination_meta(page, limit, total)},
        }

    async def sync_campaign(self, post_id: int, campaign_id: str, session_factory) -> Dict[str, Any]:
        """Run a reconciliation pass and return the refreshed campaign; ProviderError propagates"""
        with session_factory() as db:
            get_published_post(post_id, db)
            campaign_store.get_campaign_for_post(post_id, campaign_id, db)

        await self.synchronizer.sync(campaign_id)

        with session_factory() as db:
            return serialize_campaign(campaign_store.get_campaign_for_post(post_id, campaign_id, db))

    def export_recipients_csv(self, post_id: int, campaign_id: str, db: Session) -> Dict[str, str]:
        """Recipients as CSV, oldest first

        Returns:
            dict: {"filename": ..., "content": ...}
        """
        get_published_post(post_id, db)
        campaign_store.get_campaign_for_post(post_id, campaign_id, db)

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for recipient in campaign_store.list_recipients(campaign_id, db):
            writer.writerow([_csv_value(getattr(recipient, column)) for column in CSV_HEADER])

        return {
            "filename": f"campaign-{campaign_id}-recipients.csv",
            "content": buffer.getvalue(),
        }
