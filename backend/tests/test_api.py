"""API endpoint tests"""
import pytest
from unittest.mock import Mock

from mailcast.core.errors import ProviderError
from mailcast.models.campaign_recipient import CampaignRecipient


@pytest.fixture
def api(client, container):
    """Test client whose confirmations only record the dispatch request"""
    container.campaigns.scheduler = Mock()
    return client


def base_url(post_id) -> str:
    return f"/api/posts/{post_id}/campaigns"


def create(api, post_id, **body):
    payload = {"audience": "newsletter_members"}
    payload.update(body)
    response = api.post(base_url(post_id), json=payload)
    assert response.status_code == 201, response.text
    return response.json()["campaign"]


@pytest.mark.critical
class TestCampaignFlow:
    def test_estimate_create_confirm(self, api, container, published_post, subscribers):
        estimate = api.post(f"{base_url(published_post.id)}/estimate", json={"audience": "newsletter_members"})
        assert estimate.status_code == 200
        assert estimate.json() == {"audience": "newsletter_members", "recipient_count": 3}

        campaign = create(api, published_post.id)
        assert campaign["status"] == "awaiting_confirmation"
        assert campaign["created_by_id"] == 1

        confirm = api.post(
            f"{base_url(published_post.id)}/{campaign['id']}/confirm",
            json={"confirmation_token": campaign["confirmation_token"]}
        )
        assert confirm.status_code == 200
        assert confirm.json()["campaign"]["status"] == "running"
        assert "confirmation_token" not in confirm.json()["campaign"]
        container.campaigns.scheduler.dispatch_now.assert_called_once_with(campaign["id"])

    def test_wrong_token_is_bad_request(self, api, published_post, subscribers):
        campaign = create(api, published_post.id)

        response = api.post(
            f"{base_url(published_post.id)}/{campaign['id']}/confirm",
            json={"confirmation_token": "nope"}
        )

        assert response.status_code == 400
        assert response.json() == {"detail": "Invalid confirmation token."}

    def test_invalid_audience(self, api, published_post, subscribers):
        response = api.post(base_url(published_post.id), json={"audience": "robots"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid audience value."

    def test_unknown_post_and_campaign(self, api, published_post):
        assert api.get(base_url(9999)).status_code == 404
        response = api.get(f"{base_url(published_post.id)}/deadbeef")
        assert response.status_code == 404
        assert response.json() == {"detail": "Campaign not found."}

    def test_requires_staff_identity(self, api, published_post):
        response = api.get(base_url(published_post.id), headers={"X-Staff-User-Id": ""})
        assert response.status_code == 401


@pytest.mark.high
class TestReads:
    def test_list_and_read(self, api, published_post, subscribers):
        campaign = create(api, published_post.id)

        listing = api.get(base_url(published_post.id), params={"limit": 5})
        assert listing.status_code == 200
        assert [c["id"] for c in listing.json()["campaigns"]] == [campaign["id"]]
        assert listing.json()["meta"]["pagination"] == {"page": 1, "limit": 5, "pages": 1, "total": 1}

        read = api.get(f"{base_url(published_post.id)}/{campaign['id']}")
        assert read.json()["campaign"]["audience"] == "newsletter_members"

    def test_recipients_and_csv(self, api, published_post, subscribers):
        campaign = create(api, published_post.id)

        recipients = api.get(f"{base_url(published_post.id)}/{campaign['id']}/recipients")
        assert recipients.status_code == 200
        assert recipients.json()["recipients"] == []

        export = api.get(f"{base_url(published_post.id)}/{campaign['id']}/recipients.csv")
        assert export.status_code == 200
        assert export.headers["content-type"].startswith("text/csv")
        assert f'filename="campaign-{campaign["id"]}-recipients.csv"' in export.headers["content-disposition"]
        assert export.text.splitlines()[0].startswith("email,name,recipient_type,status")

    def test_sync_without_sent_recipients_stamps_sync_time(self, api, published_post, subscribers, fake_resend):
        campaign = create(api, published_post.id)

        response = api.post(f"{base_url(published_post.id)}/{campaign['id']}/sync")

        assert response.status_code == 200
        assert response.json()["campaign"]["last_synced_at"] is not None
        assert fake_resend.list_calls == []

    def test_sync_provider_failure_is_bad_gateway(self, api, db_session, published_post, subscribers, fake_resend):
        campaign = create(api, published_post.id)
        db_session.add(CampaignRecipient(
            campaign_id=campaign["id"], email="ada@example.com", recipient_type="member",
            status="sent", resend_email_id="email_x"
        ))
        db_session.commit()
        fake_resend.list_error = ProviderError("Service unavailable", upstream_status=503)

        response = api.post(f"{base_url(published_post.id)}/{campaign['id']}/sync")

        assert response.status_code == 502
        assert response.json() == {"detail": "Service unavailable"}


@pytest.mark.medium
class TestOperational:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}

    def test_metrics(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "mailcast_campaign_runs_total" in response.text
