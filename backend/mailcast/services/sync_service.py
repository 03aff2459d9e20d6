"""Reconciliation - polls Resend's sent-email listing and advances recipient status"""
from typing import Callable, Dict, Optional, Tuple

from mailcast.core.config import Settings
from mailcast.core.errors import ProviderError
from mailcast.core.logging import sync_logger
from mailcast.core.metrics import sync_runs_counter
from mailcast.db import campaign_store
from mailcast.models.campaign_recipient import RecipientStatus
from mailcast.utils.time import parse_provider_timestamp, utcnow

PROVIDER_EVENT_STATUS = {
    "clicked": RecipientStatus.CLICKED.value,
    "opened": RecipientStatus.OPENED.value,
    "delivered": RecipientStatus.DELIVERED.value,
    "bounced": RecipientStatus.FAILED.value,
    "complained": RecipientStatus.FAILED.value,
}


def map_provider_event(last_event: Optional[str]) -> str:
    """Recipient status for a provider last_event; unknown events count as sent"""
    return PROVIDER_EVENT_STATUS.get((last_event or "").lower(), RecipientStatus.SENT.value)


class CampaignSynchronizer:
    def __init__(self, session_factory, client_factory: Callable, config: Settings):
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.config = config

    async def sync(self, campaign_id: str) -> Dict[str, int]:
        """Run one reconciliation pass for a campaign.

        Pages through the provider listing until every tracked recipient was
        seen, the listing runs out, or CAMPAIGN_SYNC_MAX_PAGES is reached.

        Returns:
            dict: {"pages": pages fetched, "updated": recipients changed}

        Raises:
            ConfigurationError: Provider API key missing
            ProviderError: Listing request failed; nothing is stamped
        """
        client = self.client_factory()

        with self.session_factory() as db:
            pending: Dict[str, Tuple[int, str]] = {
                r.resend_email_id: (r.id, r.status)
                for r in campaign_store.list_synced_recipients(campaign_id, db)
                if r.status != RecipientStatus.FAILED.value
            }

        tracked = len(pending)
        pages = 0
        updated = 0
        cursor = None

        try:
            while pending and pages < self.config.CAMPAIGN_SYNC_MAX_PAGES:
                page = await client.list_emails(limit=self.config.CAMPAIGN_SYNC_PAGE_SIZE, after=cursor)
                pages += 1
                if not page.items:
                    break

                with self.session_factory() as db:
                    for item in page.items:
                        match = pending.pop(item.id, None)
                        if match is None:
                            continue
                        updated += self._apply(campaign_id, match, item, db)

                if not page.has_more or not page.next_cursor:
                    break
                cursor = page.next_cursor
        except ProviderError:
            sync_runs_counter.labels(status="failed").inc()
            sync_logger.error(f"Sync for campaign {campaign_id} aborted after {pages} page(s)", exc_info=True)
            raise

        with self.session_factory() as db:
            campaign_store.update_aggregates(campaign_id, db)
            campaign_store.mark_synced(campaign_id, db)

        sync_runs_counter.labels(status="success").inc()
        sync_logger.info(
            f"Synced campaign {campaign_id}: {pages} page(s), {updated}/{tracked} recipient(s) updated, "
            f"{len(pending)} not found"
        )
        return {"pages": pages, "updated": updated}

    def _apply(self, campaign_id: str, match: Tuple[int, str], item, db) -> int:
        recipient_id, current_status = match
        new_status = map_provider_event(item.last_event)
        occurred_at = parse_provider_timestamp(item.created_at) or utcnow()
        # The listing only carries the send time; a failure is stamped when observed
        status_at = utcnow() if new_status == RecipientStatus.FAILED.value else occurred_at

        changed = campaign_store.apply_provider_event(
            recipient_id,
            current_status,
            new_status,
            status_at,
            occurred_at,
            item.last_event,
            item.raw,
            campaign_id,
            db
        )
        return 1 if changed else 0
