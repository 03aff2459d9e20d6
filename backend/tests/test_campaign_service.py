"""Campaign service tests - create, estimate, confirm, browse and export"""
import csv
import io
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

from mailcast.core.errors import ConfigurationError, InvalidInput, NotFound
from mailcast.models.campaign import Campaign
from mailcast.models.campaign_recipient import CampaignRecipient
from mailcast.services.campaign_service import CSV_HEADER, CampaignService


@pytest.fixture
def service(container):
    """Campaign service with a scheduler that only records dispatch requests"""
    scheduler = Mock()
    return CampaignService(container.resolver, scheduler, container.synchronizer, container.settings)


@pytest.mark.critical
class TestCreateCampaign:
    def test_estimate_counts_eligible_recipients(self, service, db_session, published_post, subscribers):
        result = service.estimate_recipients(published_post.id, "newsletter_members", db_session)
        assert result == {"audience": "newsletter_members", "recipient_count": 3}

    def test_create_returns_token_once(self, service, db_session, published_post, subscribers, staff_user):
        created = service.create_campaign(published_post.id, "newsletter_members", db_session, created_by_id=staff_user.id)

        assert created["status"] == "awaiting_confirmation"
        assert created["estimated_recipient_count"] == 3
        assert created["created_by_id"] == staff_user.id
        assert len(created["confirmation_token"]) == 48

        read = service.read_campaign(published_post.id, created["id"], db_session)
        assert "confirmation_token" not in read

    def test_confirmation_expires_after_fifteen_minutes(self, service, db_session, published_post, subscribers):
        before = datetime.now(timezone.utc)
        created = service.create_campaign(published_post.id, "newsletter_members", db_session)
        expires = datetime.fromisoformat(created["confirmation_expires_at"])

        assert timedelta(minutes=14, seconds=59) < expires - before <= timedelta(minutes=15, seconds=5)

    def test_empty_audience_cannot_be_created(self, service, db_session, published_post):
        with pytest.raises(InvalidInput, match="No eligible recipients"):
            service.create_campaign(published_post.id, "paid_members", db_session)
        assert db_session.query(Campaign).count() == 0

    def test_invalid_audience(self, service, db_session, published_post, subscribers):
        with pytest.raises(InvalidInput):
            service.create_campaign(published_post.id, "all_humans", db_session)

    def test_unpublished_post_is_rejected(self, service, db_session, draft_post, subscribers):
        with pytest.raises(InvalidInput):
            service.create_campaign(draft_post.id, "newsletter_members", db_session)

    def test_missing_post(self, service, db_session):
        with pytest.raises(NotFound, match="Post not found"):
            service.estimate_recipients(9999, "newsletter_members", db_session)

    def test_missing_provider_config(self, service, db_session, published_post, subscribers):
        service.config = service.config.model_copy(update={"RESEND_FROM_EMAIL": ""})
        with pytest.raises(ConfigurationError):
            service.create_campaign(published_post.id, "newsletter_members", db_session)

    def test_schedule_time_is_read_in_taipei_time(self, service, db_session, published_post, subscribers):
        created = service.create_campaign(
            published_post.id, "newsletter_members", db_session, scheduled_at_local="2030-03-01T09:30"
        )
        assert created["scheduled_for"] == "2030-03-01T01:30:00+00:00"

    def test_malformed_schedule_time(self, service, db_session, published_post, subscribers):
        with pytest.raises(InvalidInput, match="scheduled_at_local"):
            service.create_campaign(published_post.id, "newsletter_members", db_session, scheduled_at_local="next tuesday")


@pytest.mark.critical
class TestConfirmCampaign:
    def test_wrong_token_never_changes_status(self, service, db_session, published_post, subscribers):
        created = service.create_campaign(published_post.id, "newsletter_members", db_session)

        with pytest.raises(InvalidInput):
            service.confirm_campaign(published_post.id, created["id"], "not-the-token", db_session)

        db_session.expire_all()
        assert db_session.get(Campaign, created["id"]).status == "awaiting_confirmation"
        service.scheduler.dispatch_now.assert_not_called()

    def test_expired_token_never_changes_status(self, service, db_session, published_post, subscribers):
        created = service.create_campaign(published_post.id, "newsletter_members", db_session)
        campaign = db_session.get(Campaign, created["id"])
        campaign.confirmation_expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        db_session.commit()

        with pytest.raises(InvalidInput, match="expired"):
            service.confirm_campaign(published_post.id, created["id"], created["confirmation_token"], db_session)

        db_session.expire_all()
        assert db_session.get(Campaign, created["id"]).status == "awaiting_confirmation"

    def test_confirm_without_schedule_starts_dispatch(self, service, db_session, published_post, subscribers):
        created = service.create_campaign(published_post.id, "newsletter_members", db_session)

        confirmed = service.confirm_campaign(published_post.id, created["id"], created["confirmation_token"], db_session)

        assert confirmed["status"] == "running"
        assert confirmed["confirmed_at"] is not None
        assert confirmed["started_at"] is not None
        service.scheduler.dispatch_now.assert_called_once_with(created["id"])

    def test_confirm_with_future_schedule(self, service, db_session, published_post, subscribers):
        created = service.create_campaign(
            published_post.id, "newsletter_members", db_session, scheduled_at_local="2099-01-01T08:00"
        )

        confirmed = service.confirm_campaign(published_post.id, created["id"], created["confirmation_token"], db_session)

        assert confirmed["status"] == "scheduled"
        service.scheduler.dispatch_now.assert_not_called()

    def test_confirm_twice_is_rejected(self, service, db_session, published_post, subscribers):
        created = service.create_campaign(published_post.id, "newsletter_members", db_session)
        service.confirm_campaign(published_post.id, created["id"], created["confirmation_token"], db_session)

        with pytest.raises(InvalidInput, match="not awaiting confirmation"):
            service.confirm_campaign(published_post.id, created["id"], created["confirmation_token"], db_session)
        assert service.scheduler.dispatch_now.call_count == 1

    def test_campaign_must_belong_to_post(self, service, db_session, published_post, draft_post, subscribers):
        created = service.create_campaign(published_post.id, "newsletter_members", db_session)
        draft_post.status = "published"
        db_session.commit()

        with pytest.raises(NotFound, match="Campaign not found"):
            service.confirm_campaign(draft_post.id, created["id"], created["confirmation_token"], db_session)


@pytest.mark.high
class TestBrowse:
    def test_campaigns_newest_first_with_pagination(self, service, db_session, published_post, subscribers):
        ids = [service.create_campaign(published_post.id, "newsletter_members", db_session)["id"] for _ in range(3)]

        result = service.browse_campaigns(published_post.id, db_session, page=1, limit=2)

        assert [c["id"] for c in result["campaigns"]] == [ids[2], ids[1]]
        assert result["meta"]["pagination"] == {"page": 1, "limit": 2, "pages": 2, "total": 3}

    def test_limits_are_clamped(self, service, db_session, published_post):
        assert service.browse_campaigns(published_post.id, db_session, limit=500)["meta"]["pagination"]["limit"] == 100
        assert service.browse_campaigns(published_post.id, db_session, limit=0)["meta"]["pagination"]["limit"] == 1
        assert service.browse_campaigns(published_post.id, db_session)["meta"]["pagination"]["limit"] == 20


def seed_recipients(db_session, campaign_id):
    db_session.add_all([
        CampaignRecipient(
            campaign_id=campaign_id, email="jane@example.com", name="Doe, Jane", recipient_type="member",
            status="sent", resend_email_id="email_1",
            sent_at=datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)
        ),
        CampaignRecipient(
            campaign_id=campaign_id, email="quote@example.com", name='The "Boss"', recipient_type="staff_member",
            status="failed", last_error="Missing resend email id in batch response."
        ),
    ])
    db_session.commit()


@pytest.mark.high
class TestExport:
    def test_csv_quotes_commas_and_quotes(self, service, db_session, published_post, subscribers):
        created = service.create_campaign(published_post.id, "newsletter_members", db_session)
        seed_recipients(db_session, created["id"])

        export = service.export_recipients_csv(published_post.id, created["id"], db_session)
        lines = export["content"].splitlines()

        assert export["filename"] == f"campaign-{created['id']}-recipients.csv"
        assert lines[0] == ",".join(CSV_HEADER)
        assert lines[1].startswith('jane@example.com,"Doe, Jane",member,sent,2026-01-05T10:00:00+00:00,')
        assert lines[2].startswith('quote@example.com,"The ""Boss""",staff_member,failed,')

        rows = list(csv.DictReader(io.StringIO(export["content"])))
        assert rows[0]["name"] == "Doe, Jane"
        assert rows[0]["delivered_at"] == ""
        assert rows[0]["resend_email_id"] == "email_1"
        assert rows[1]["name"] == 'The "Boss"'
        assert rows[1]["resend_email_id"] == ""

    def test_recipients_oldest_first(self, service, db_session, published_post, subscribers):
        created = service.create_campaign(published_post.id, "newsletter_members", db_session)
        seed_recipients(db_session, created["id"])

        result = service.browse_recipients(published_post.id, created["id"], db_session)

        assert [r["email"] for r in result["recipients"]] == ["jane@example.com", "quote@example.com"]
        assert result["meta"]["pagination"]["limit"] == 100
        assert result["meta"]["pagination"]["total"] == 2
