"""Dispatch engine - submits a running campaign to Resend in rate-limited batches"""
import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from mailcast.core.config import ResendConfig, Settings, get_resend_config
from mailcast.core.errors import NotFound, RunFailure
from mailcast.core.logging import dispatch_logger
from mailcast.core.metrics import batches_counter, campaign_runs_counter, recipients_dispatched_counter
from mailcast.core.otel import get_tracer
from mailcast.db import campaign_store
from mailcast.models.campaign_batch import FINALIZED_BATCH_STATUSES
from mailcast.services.audience_service import AudienceResolver
from mailcast.services.content_service import PostContent, get_published_post
from mailcast.services.resend_client import batch_idempotency_key

tracer = get_tracer(__name__)


@dataclass(frozen=True)
class RecipientRef:
    id: int
    email: str
    name: Optional[str]


def build_message(post: PostContent, recipient: RecipientRef, campaign_id: str, resend_config: ResendConfig) -> Dict[str, Any]:
    """One Resend message for one recipient"""
    message = {
        "from": resend_config.from_email,
        "to": [recipient.email],
        "subject": post.subject,
        "html": post.html_body,
        "text": post.text_body,
        "tags": [
            {"name": "campaign_id", "value": campaign_id},
            {"name": "recipient_id", "value": str(recipient.id)},
        ],
    }
    if resend_config.reply_to:
        message["reply_to"] = resend_config.reply_to
    return message


def chunk(items: List, size: int) -> List[List]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class CampaignDispatcher:
    """Runs one campaign to completion.

    Only one run per campaign makes progress at a time: run() first takes the
    campaign's dispatch claim and returns immediately if another run holds it.
    """

    def __init__(
        self,
        session_factory,
        resolver: AudienceResolver,
        client_factory: Callable,
        config: Settings,
        sleep: Callable = asyncio.sleep
    ):
        self.session_factory = session_factory
        self.resolver = resolver
        self.client_factory = client_factory
        self.config = config
        self.sleep = sleep

    async def run(self, campaign_id: str) -> None:
        """Dispatch entry point used by the scheduler; never raises"""
        with self.session_factory() as db:
            claimed = campaign_store.claim_dispatch(
                campaign_id, db, self.config.CAMPAIGN_DISPATCH_CLAIM_TIMEOUT_SECONDS
            )
        if not claimed:
            dispatch_logger.info(f"Campaign {campaign_id} is not running or already being dispatched, skipping")
            campaign_runs_counter.labels(status="skipped").inc()
            return

        try:
            outcome = await self._run(campaign_id)
        except Exception as e:
            dispatch_logger.error(f"Campaign {campaign_id} dispatch failed: {e}", exc_info=True)
            with self.session_factory() as db:
                campaign_store.fail_campaign(campaign_id, str(e) or type(e).__name__, db)
            campaign_runs_counter.labels(status="failed").inc()
            return

        campaign_runs_counter.labels(status=outcome).inc()

    async def _run(self, campaign_id: str) -> str:
        with self.session_factory() as db:
            campaign = campaign_store.get_campaign(campaign_id, db)
            if campaign is None:
                raise NotFound("Campaign not found.")
            audience = campaign.audience
            post = get_published_post(campaign.post_id, db)

        resend_config = get_resend_config(self.config)
        client = self.client_factory()

        recipients = self._load_or_materialize(campaign_id, audience)

        with self.session_factory() as db:
            batch_status = {
                index: batch.status
                for index, batch in campaign_store.get_batches_by_index(campaign_id, db).items()
            }

        batches = chunk(recipients, self.config.CAMPAIGN_BATCH_SIZE)
        dispatch_logger.info(
            f"Dispatching campaign {campaign_id}: {len(recipients)} recipient(s) in {len(batches)} batch(es)"
        )

        submitted_any = False
        for batch_index, batch_recipients in enumerate(batches):
            if batch_status.get(batch_index) in FINALIZED_BATCH_STATUSES:
                dispatch_logger.info(f"Campaign {campaign_id} batch {batch_index} already {batch_status[batch_index]}, skipping")
                continue

            if submitted_any and self.config.CAMPAIGN_BATCH_DELAY_SECONDS > 0:
                await self.sleep(self.config.CAMPAIGN_BATCH_DELAY_SECONDS)

            await self._submit_batch(campaign_id, batch_index, batch_recipients, post, resend_config, client)
            submitted_any = True

            with self.session_factory() as db:
                campaign_store.update_aggregates(campaign_id, db)
                still_running = campaign_store.refresh_dispatch_claim(campaign_id, db)
            if not still_running:
                dispatch_logger.warning(f"Campaign {campaign_id} left running state mid-dispatch, stopping")
                return "interrupted"

        with self.session_factory() as db:
            stats = campaign_store.update_aggregates(campaign_id, db)
            completed = campaign_store.complete_campaign(campaign_id, db)

        if not completed:
            dispatch_logger.warning(f"Campaign {campaign_id} could not be marked completed (status changed)")
            return "interrupted"

        dispatch_logger.info(
            f"Campaign {campaign_id} completed: sent={stats['sent_count']} failed={stats['failed_count']}"
        )
        return "completed"

    def _load_or_materialize(self, campaign_id: str, audience: str) -> List[RecipientRef]:
        """Existing recipients in creation order, inserting them first on the initial run"""
        with self.session_factory() as db:
            if campaign_store.count_recipients(campaign_id, db) == 0:
                resolved = self.resolver.resolve(audience, db)
                if not resolved:
                    raise RunFailure("No eligible recipients at send time.")
                inserted = campaign_store.materialize_recipients(campaign_id, resolved, db)
                dispatch_logger.info(f"Materialized {inserted} recipient(s) for campaign {campaign_id}")

            return [
                RecipientRef(id=r.id, email=r.email, name=r.name)
                for r in campaign_store.list_recipients(campaign_id, db)
            ]

    async def _submit_batch(
        self,
        campaign_id: str,
        batch_index: int,
        recipients: List[RecipientRef],
        post: PostContent,
        resend_config: ResendConfig,
        client
    ) -> None:
        recipient_ids = [r.id for r in recipients]
        with self.session_factory() as db:
            batch_id = campaign_store.start_batch(campaign_id, batch_index, len(recipients), db)

        idempotency_key = batch_idempotency_key(campaign_id, batch_index)

        with tracer.start_as_current_span("campaign.batch.submit") as span:
            span.set_attribute("campaign.id", campaign_id)
            span.set_attribute("campaign.batch_index", batch_index)
            span.set_attribute("campaign.batch_size", len(recipients))
            try:
                messages = [build_message(post, r, campaign_id, resend_config) for r in recipients]
                provider_ids = await client.send_batch(messages, idempotency_key=idempotency_key)
                with self.session_factory() as db:
                    try:
                        sent_count, failed_count = campaign_store.record_batch_results(
                            batch_id, recipient_ids, provider_ids, db
                        )
                    except Exception:
                        db.rollback()
                        raise
            except Exception as e:
                span.record_exception(e)
                dispatch_logger.warning(f"Campaign {campaign_id} batch {batch_index} failed: {e}")
                with self.session_factory() as db:
                    campaign_store.fail_batch(batch_id, recipient_ids, str(e) or type(e).__name__, db)
                batches_counter.labels(status="error").inc()
                recipients_dispatched_counter.labels(status="failed").inc(len(recipient_ids))
                return

        batches_counter.labels(status="submitted" if failed_count == 0 else "failed").inc()
        recipients_dispatched_counter.labels(status="sent").inc(sent_count)
        recipients_dispatched_counter.labels(status="failed").inc(failed_count)
        dispatch_logger.info(
            f"Campaign {campaign_id} batch {batch_index}: {sent_count} sent, {failed_count} failed"
        )
