"""Campaign persistence - state transitions, recipients, batches and aggregates

Every status change goes through a conditional UPDATE keyed on the current
status, so competing workers (scheduler ticks, duplicate triggers, concurrent
syncs) resolve at the row level without extra locking.

Functions commit their own work; none of them is meant to be held open across
an await.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from mailcast.core.errors import NotFound
from mailcast.models.campaign import Campaign, CampaignStatus
from mailcast.models.campaign_batch import BatchStatus, CampaignBatch
from mailcast.models.campaign_event import CampaignEvent
from mailcast.models.campaign_recipient import (
    CampaignRecipient, RecipientStatus, STATUS_TIMESTAMP_FIELDS, can_transition
)
from mailcast.utils.time import utcnow

logger = logging.getLogger(__name__)

MISSING_PROVIDER_ID_ERROR = "Missing resend email id in batch response."

SENT_BUCKET = {RecipientStatus.SENT.value, RecipientStatus.DELIVERED.value, RecipientStatus.OPENED.value, RecipientStatus.CLICKED.value}
DELIVERED_BUCKET = {RecipientStatus.DELIVERED.value, RecipientStatus.OPENED.value, RecipientStatus.CLICKED.value}
OPENED_BUCKET = {RecipientStatus.OPENED.value, RecipientStatus.CLICKED.value}


# --- Campaign lookups ---

def get_campaign(campaign_id: str, db: Session) -> Optional[Campaign]:
    return db.query(Campaign).filter(Campaign.id == campaign_id).first()


def get_campaign_for_post(post_id: int, campaign_id: str, db: Session) -> Campaign:
    """Get a campaign scoped to its post

    Raises:
        NotFound: No campaign with this id belongs to the post
    """
    campaign = db.query(Campaign).filter(
        Campaign.id == campaign_id,
        Campaign.post_id == post_id
    ).first()
    if not campaign:
        raise NotFound("Campaign not found.")
    return campaign


def list_campaigns_for_post(post_id: int, db: Session, limit: int, offset: int) -> Tuple[List[Campaign], int]:
    """Newest first"""
    query = db.query(Campaign).filter(Campaign.post_id == post_id)
    total = query.count()
    rows = query.order_by(Campaign.created_at.desc(), Campaign.id.desc()).limit(limit).offset(offset).all()
    return rows, total


def list_recipients(campaign_id: str, db: Session, limit: Optional[int] = None, offset: int = 0) -> List[CampaignRecipient]:
    """Oldest first; insertion order breaks created_at ties"""
    query = db.query(CampaignRecipient).filter(
        CampaignRecipient.campaign_id == campaign_id
    ).order_by(CampaignRecipient.created_at.asc(), CampaignRecipient.id.asc())
    if limit is not None:
        query = query.limit(limit).offset(offset)
    return query.all()


def count_recipients(campaign_id: str, db: Session) -> int:
    return db.query(CampaignRecipient).filter(CampaignRecipient.campaign_id == campaign_id).count()


def list_synced_recipients(campaign_id: str, db: Session) -> List[CampaignRecipient]:
    """Recipients the provider accepted (those carrying a provider email id)"""
    return db.query(CampaignRecipient).filter(
        CampaignRecipient.campaign_id == campaign_id,
        CampaignRecipient.resend_email_id.isnot(None)
    ).all()


# --- State machine ---

def transition_campaign(
    campaign_id: str,
    from_statuses: Sequence[str],
    to_status: str,
    db: Session,
    **fields
) -> bool:
    """Compare-and-set the campaign status.

    Returns:
        bool: True when this caller performed the transition, False when the
        campaign was no longer in one of from_statuses
    """
    values = dict(fields)
    values["status"] = to_status
    values["updated_at"] = utcnow()

    updated = db.query(Campaign).filter(
        Campaign.id == campaign_id,
        Campaign.status.in_(list(from_statuses))
    ).update(values, synchronize_session=False)
    db.commit()

    if updated:
        logger.info(f"Campaign {campaign_id} -> {to_status}")
    return updated == 1


def claim_dispatch(campaign_id: str, db: Session, timeout_seconds: int) -> bool:
    """Take the single dispatch slot of a running campaign.

    A claim older than timeout_seconds belongs to a run that died and may be taken over.
    """
    now = utcnow()
    stale_before = now - timedelta(seconds=timeout_seconds)

    updated = db.query(Campaign).filter(
        Campaign.id == campaign_id,
        Campaign.status == CampaignStatus.RUNNING.value,
        or_(Campaign.dispatch_claimed_at.is_(None), Campaign.dispatch_claimed_at < stale_before)
    ).update({"dispatch_claimed_at": now, "updated_at": now}, synchronize_session=False)
    db.commit()
    return updated == 1


def refresh_dispatch_claim(campaign_id: str, db: Session) -> bool:
    """Heartbeat for the active run; False once the campaign left running (e.g. canceled)"""
    now = utcnow()
    updated = db.query(Campaign).filter(
        Campaign.id == campaign_id,
        Campaign.status == CampaignStatus.RUNNING.value
    ).update({"dispatch_claimed_at": now, "updated_at": now}, synchronize_session=False)
    db.commit()
    return updated == 1


def complete_campaign(campaign_id: str, db: Session) -> bool:
    return transition_campaign(
        campaign_id,
        [CampaignStatus.RUNNING.value],
        CampaignStatus.COMPLETED.value,
        db,
        completed_at=utcnow(),
        progress_pct=100,
        dispatch_claimed_at=None
    )


def fail_campaign(campaign_id: str, error: str, db: Session) -> bool:
    return transition_campaign(
        campaign_id,
        [CampaignStatus.RUNNING.value],
        CampaignStatus.FAILED.value,
        db,
        error=error[:2000],
        completed_at=utcnow(),
        dispatch_claimed_at=None
    )


def promote_due_campaigns(db: Session, now: Optional[datetime] = None) -> List[str]:
    """Move every due scheduled campaign to running.

    Returns only the ids this caller promoted; a campaign promoted by a
    concurrent tick is skipped.
    """
    now = now or utcnow()
    due_ids = [
        row.id for row in db.query(Campaign.id).filter(
            Campaign.status == CampaignStatus.SCHEDULED.value,
            Campaign.scheduled_for.isnot(None),
            Campaign.scheduled_for <= now
        ).order_by(Campaign.scheduled_for.asc()).all()
    ]

    promoted = []
    for campaign_id in due_ids:
        if transition_campaign(
            campaign_id,
            [CampaignStatus.SCHEDULED.value],
            CampaignStatus.RUNNING.value,
            db,
            started_at=now
        ):
            promoted.append(campaign_id)
    return promoted


def find_unclaimed_running_campaigns(db: Session, timeout_seconds: int) -> List[str]:
    """Running campaigns with no live dispatch run (never started, or the run died)"""
    stale_before = utcnow() - timedelta(seconds=timeout_seconds)
    return [
        row.id for row in db.query(Campaign.id).filter(
            Campaign.status == CampaignStatus.RUNNING.value,
            or_(Campaign.dispatch_claimed_at.is_(None), Campaign.dispatch_claimed_at < stale_before)
        ).all()
    ]


# --- Recipients ---

def materialize_recipients(campaign_id: str, recipients: Iterable, db: Session) -> int:
    """Insert a campaign's recipients and stamp recipient_count in one transaction.

    Args:
        recipients: AudienceRecipient values, already deduplicated

    Returns:
        int: Number of recipients inserted
    """
    now = utcnow()
    rows = [
        CampaignRecipient(
            campaign_id=campaign_id,
            member_id=recipient.member_id,
            user_id=recipient.user_id,
            email=recipient.email,
            name=recipient.name,
            recipient_type=recipient.recipient_type,
            status=RecipientStatus.PENDING.value,
            created_at=now,
            updated_at=now
        )
        for recipient in recipients
    ]

    try:
        db.add_all(rows)
        db.flush()
        db.query(Campaign).filter(Campaign.id == campaign_id).update({
            "recipient_count": len(rows),
            "started_at": func.coalesce(Campaign.started_at, now),
            "updated_at": now
        }, synchronize_session=False)
        db.commit()
    except Exception:
        db.rollback()
        raise

    return len(rows)


# --- Batches ---

def get_batches_by_index(campaign_id: str, db: Session) -> Dict[int, CampaignBatch]:
    batches = db.query(CampaignBatch).filter(CampaignBatch.campaign_id == campaign_id).all()
    return {batch.batch_index: batch for batch in batches}


def start_batch(campaign_id: str, batch_index: int, recipient_count: int, db: Session) -> int:
    """Create (or, on resume, reuse) the batch row for an index in submitting state

    Returns:
        int: Batch id
    """
    now = utcnow()
    batch = db.query(CampaignBatch).filter(
        CampaignBatch.campaign_id == campaign_id,
        CampaignBatch.batch_index == batch_index
    ).first()

    if batch is None:
        batch = CampaignBatch(
            campaign_id=campaign_id,
            batch_index=batch_index,
            created_at=now
        )
        db.add(batch)

    batch.status = BatchStatus.SUBMITTING.value
    batch.recipient_count = recipient_count
    batch.sent_count = 0
    batch.failed_count = 0
    batch.error = None
    batch.updated_at = now
    db.commit()
    return batch.id


def record_batch_results(
    batch_id: int,
    recipient_ids: Sequence[int],
    provider_ids: Sequence[Optional[str]],
    db: Session
) -> Tuple[int, int]:
    """Map provider results back to recipients by position and finalize the batch.

    Returns:
        tuple: (sent_count, failed_count)
    """
    now = utcnow()
    recipients = {
        r.id: r for r in db.query(CampaignRecipient).filter(CampaignRecipient.id.in_(list(recipient_ids))).all()
    }

    sent_count = 0
    for position, recipient_id in enumerate(recipient_ids):
        recipient = recipients.get(recipient_id)
        if recipient is None:
            continue
        provider_id = provider_ids[position] if position < len(provider_ids) else None

        recipient.batch_id = batch_id
        recipient.updated_at = now
        if provider_id:
            sent_count += 1
            recipient.resend_email_id = provider_id
            recipient.status = RecipientStatus.SENT.value
            recipient.sent_at = now
            recipient.last_error = None
        else:
            recipient.status = RecipientStatus.FAILED.value
            recipient.failed_at = now
            recipient.last_error = MISSING_PROVIDER_ID_ERROR

    failed_count = len(recipient_ids) - sent_count
    db.query(CampaignBatch).filter(CampaignBatch.id == batch_id).update({
        "status": BatchStatus.SUBMITTED.value if failed_count == 0 else BatchStatus.FAILED.value,
        "sent_count": sent_count,
        "failed_count": failed_count,
        "submitted_at": now,
        "updated_at": now
    }, synchronize_session=False)
    db.commit()
    return sent_count, failed_count


def fail_batch(batch_id: int, recipient_ids: Sequence[int], error: str, db: Session) -> None:
    """Mark a whole batch and all of its recipients failed with the same error"""
    now = utcnow()
    error = error[:2000]

    db.query(CampaignRecipient).filter(CampaignRecipient.id.in_(list(recipient_ids))).update({
        "batch_id": batch_id,
        "status": RecipientStatus.FAILED.value,
        "failed_at": now,
        "last_error": error,
        "updated_at": now
    }, synchronize_session=False)

    db.query(CampaignBatch).filter(CampaignBatch.id == batch_id).update({
        "status": BatchStatus.FAILED.value,
        "sent_count": 0,
        "failed_count": len(recipient_ids),
        "error": error,
        "updated_at": now
    }, synchronize_session=False)
    db.commit()


# --- Reconciliation ---

def apply_provider_event(
    recipient_id: int,
    observed_status: str,
    new_status: str,
    status_at: datetime,
    occurred_at: datetime,
    event_type: Optional[str],
    payload: Optional[dict],
    campaign_id: str,
    db: Session
) -> bool:
    """Move a recipient to new_status if the lifecycle allows it.

    The update is conditioned on observed_status so two concurrent syncs cannot
    both apply the same transition; the status timestamp is only stamped when
    still empty. Applied transitions are appended to the event log with the
    provider-side occurred_at.

    Returns:
        bool: True when the recipient changed
    """
    if not can_transition(observed_status, new_status):
        return False

    recipient = db.query(CampaignRecipient).filter(
        CampaignRecipient.id == recipient_id,
        CampaignRecipient.status == observed_status
    ).first()
    if recipient is None:
        return False

    now = utcnow()
    values = {"status": new_status, "updated_at": now}
    timestamp_field = STATUS_TIMESTAMP_FIELDS.get(new_status)
    if timestamp_field and getattr(recipient, timestamp_field) is None:
        values[timestamp_field] = status_at

    updated = db.query(CampaignRecipient).filter(
        CampaignRecipient.id == recipient_id,
        CampaignRecipient.status == observed_status
    ).update(values, synchronize_session=False)

    if updated:
        db.add(CampaignEvent(
            campaign_id=campaign_id,
            recipient_id=recipient_id,
            event_type=event_type or new_status,
            payload=payload,
            occurred_at=occurred_at,
            created_at=now
        ))
    db.commit()
    return updated == 1


def mark_synced(campaign_id: str, db: Session) -> None:
    now = utcnow()
    db.query(Campaign).filter(Campaign.id == campaign_id).update(
        {"last_synced_at": now, "updated_at": now}, synchronize_session=False
    )
    db.commit()


# --- Aggregates ---

def compute_progress_pct(sent_count: int, failed_count: int, recipient_count: int) -> float:
    if recipient_count <= 0:
        return 0
    return round(((sent_count + failed_count) / recipient_count) * 100, 2)


def compute_aggregates(status_counts: Dict[str, int]) -> Dict[str, float]:
    """Derive campaign counters from recipient counts grouped by status"""
    stats = {
        "recipient_count": 0,
        "sent_count": 0,
        "delivered_count": 0,
        "opened_count": 0,
        "clicked_count": 0,
        "failed_count": 0,
    }

    for status, count in status_counts.items():
        count = int(count or 0)
        stats["recipient_count"] += count
        if status in SENT_BUCKET:
            stats["sent_count"] += count
        if status in DELIVERED_BUCKET:
            stats["delivered_count"] += count
        if status in OPENED_BUCKET:
            stats["opened_count"] += count
        if status == RecipientStatus.CLICKED.value:
            stats["clicked_count"] += count
        if status == RecipientStatus.FAILED.value:
            stats["failed_count"] += count

    stats["progress_pct"] = compute_progress_pct(
        stats["sent_count"], stats["failed_count"], stats["recipient_count"]
    )
    return stats


def update_aggregates(campaign_id: str, db: Session) -> Dict[str, float]:
    """Recompute and persist the campaign counters from current recipient rows"""
    rows = db.query(
        CampaignRecipient.status, func.count(CampaignRecipient.id)
    ).filter(
        CampaignRecipient.campaign_id == campaign_id
    ).group_by(CampaignRecipient.status).all()

    stats = compute_aggregates({status: count for status, count in rows})

    average_read = db.query(func.avg(CampaignRecipient.read_duration_ms)).filter(
        CampaignRecipient.campaign_id == campaign_id,
        CampaignRecipient.read_duration_ms.isnot(None)
    ).scalar()

    values = dict(stats)
    values["average_read_duration_ms"] = int(round(average_read)) if average_read is not None else None
    values["updated_at"] = utcnow()

    db.query(Campaign).filter(Campaign.id == campaign_id).update(values, synchronize_session=False)
    db.commit()
    return stats
