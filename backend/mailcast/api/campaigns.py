"""Campaign API routes"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from mailcast.container import Container, get_container, get_session
from mailcast.core.security import require_staff
from mailcast.schemas.campaigns import ConfirmCampaignRequest, CreateCampaignRequest, EstimateRequest

router = APIRouter(prefix="/api/posts/{post_id}/campaigns", tags=["campaigns"])
logger = logging.getLogger(__name__)


@router.get("")
def list_campaigns(
    post_id: int,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None),
    user_id: int = Depends(require_staff),
    container: Container = Depends(get_container),
    db: Session = Depends(get_session)
):
    """List a post's campaigns, newest first"""
    return container.campaigns.browse_campaigns(post_id, db, page=page, limit=limit)


@router.post("/estimate")
def estimate_campaign(
    post_id: int,
    request_data: EstimateRequest,
    user_id: int = Depends(require_staff),
    container: Container = Depends(get_container),
    db: Session = Depends(get_session)
):
    """Count eligible recipients for an audience"""
    return container.campaigns.estimate_recipients(post_id, request_data.audience, db)


@router.post("", status_code=201)
def create_campaign(
    post_id: int,
    request_data: CreateCampaignRequest,
    user_id: int = Depends(require_staff),
    container: Container = Depends(get_container),
    db: Session = Depends(get_session)
):
    """Create a campaign; the response carries the one-time confirmation token"""
    campaign = container.campaigns.create_campaign(
        post_id,
        request_data.audience,
        db,
        scheduled_at_local=request_data.scheduled_at_local,
        created_by_id=user_id
    )
    return {"campaign": campaign}


@router.post("/{campaign_id}/confirm")
async def confirm_campaign(
    post_id: int,
    campaign_id: str,
    request_data: ConfirmCampaignRequest,
    user_id: int = Depends(require_staff),
    container: Container = Depends(get_container),
    db: Session = Depends(get_session)
):
    """Confirm a campaign; async so an immediate dispatch lands on the server's event loop"""
    campaign = container.campaigns.confirm_campaign(post_id, campaign_id, request_data.confirmation_token, db)
    return {"campaign": campaign}


@router.get("/{campaign_id}")
def get_campaign(
    post_id: int,
    campaign_id: str,
    user_id: int = Depends(require_staff),
    container: Container = Depends(get_container),
    db: Session = Depends(get_session)
):
    return {"campaign": container.campaigns.read_campaign(post_id, campaign_id, db)}


@router.get("/{campaign_id}/recipients")
def list_recipients(
    post_id: int,
    campaign_id: str,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None),
    user_id: int = Depends(require_staff),
    container: Container = Depends(get_container),
    db: Session = Depends(get_session)
):
    """List a campaign's recipients, oldest first"""
    return container.campaigns.browse_recipients(post_id, campaign_id, db, page=page, limit=limit)


@router.post("/{campaign_id}/sync")
async def sync_campaign(
    post_id: int,
    campaign_id: str,
    user_id: int = Depends(require_staff),
    container: Container = Depends(get_container)
):
    """Reconcile recipient status with Resend now"""
    campaign = await container.campaigns.sync_campaign(post_id, campaign_id, container.session_factory)
    return {"campaign": campaign}


@router.get("/{campaign_id}/recipients.csv")
def export_recipients(
    post_id: int,
    campaign_id: str,
    user_id: int = Depends(require_staff),
    container: Container = Depends(get_container),
    db: Session = Depends(get_session)
):
    """Download recipients as CSV"""
    export = container.campaigns.export_recipients_csv(post_id, campaign_id, db)
    return PlainTextResponse(
        export["content"],
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{export["filename"]}"'}
    )
