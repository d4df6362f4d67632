"""
Integration tests for the email provider webhook.
"""
import pytest

from mailroom.lib.settings import settings
from mailroom.models.campaigns import CampaignStatus
from mailroom.models.recipients import RecipientStatus
from mailroom.services import recipient_service, unsubscribe_service

from conftest import emails

URL = "/webhooks/email-events"


@pytest.fixture(autouse=True)
def webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", "hook-secret")


@pytest.fixture
def sent_campaign(db, make_campaign):
    """A sending campaign whose three recipients were sent as msg-0..msg-2."""
    campaign = make_campaign(emails(3), status=CampaignStatus.SENDING)
    for index, recipient in enumerate(recipient_service.next_pending_batch(db, campaign.id, 3)):
        recipient_service.mark_sent(db, recipient.id, f"msg-{index}")
    return campaign


def _recipients(db, campaign_id):
    recipients, _ = recipient_service.list_recipients(db, campaign_id)
    return {r.provider_message_id: r for r in recipients}


@pytest.mark.integration
@pytest.mark.parametrize("secret", [None, "wrong"])
def test_rejects_missing_or_wrong_secret(client, secret):
    params = {"secret": secret} if secret else {}

    response = client.post(URL, params=params, json={"event": "opened", "message-id": "msg-0"})

    assert response.status_code == 401


@pytest.mark.integration
def test_rejects_when_not_configured(client, monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", "")

    response = client.post(URL, params={"secret": ""}, json={"event": "opened"})

    assert response.status_code == 401


@pytest.mark.integration
def test_opened_and_clicked(client, db, sent_campaign):
    response = client.post(
        URL,
        params={"secret": "hook-secret"},
        json=[
            {"event": "opened", "email": "user0000@example.com", "message-id": "msg-0"},
            {"event": "clicked", "email": "user0001@example.com", "message-id": "msg-1", "link": "https://x"},
        ],
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "processed": 2, "ignored": 0, "errors": 0}
    recipients = _recipients(db, sent_campaign.id)
    assert recipients["msg-0"].opened_at is not None
    assert recipients["msg-0"].clicked_at is None
    # A click implies an open
    assert recipients["msg-1"].opened_at is not None
    assert recipients["msg-1"].clicked_at is not None


@pytest.mark.integration
def test_hard_bounce(client, db, sent_campaign):
    response = client.post(
        URL,
        params={"secret": "hook-secret"},
        json={"event": "hard_bounce", "message-id": "msg-2", "reason": "Mailbox does not exist"},
    )

    assert response.status_code == 200
    recipient = _recipients(db, sent_campaign.id)["msg-2"]
    assert recipient.status == RecipientStatus.BOUNCED
    assert recipient.error == "Mailbox does not exist"


@pytest.mark.integration
def test_unsubscribed(client, db, sent_campaign):
    response = client.post(
        URL,
        params={"secret": "hook-secret"},
        json={"event": "unsubscribed", "email": "User0000@example.com", "message-id": "msg-0"},
    )

    assert response.status_code == 200
    assert unsubscribe_service.is_unsubscribed(db, "user0000@example.com")
    entries, _ = unsubscribe_service.list_unsubscribes(db)
    assert entries[0].source == "brevo"
    assert entries[0].campaign_id == sent_campaign.id


@pytest.mark.integration
def test_unhandled_and_unknown_events_are_ignored(client, sent_campaign):
    response = client.post(
        URL,
        params={"secret": "hook-secret"},
        json=[
            {"event": "delivered", "message-id": "msg-0"},
            {"event": "opened", "message-id": "not-a-campaign-message"},
        ],
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "processed": 1, "ignored": 1, "errors": 0}


@pytest.mark.integration
def test_failing_event_does_not_fail_the_batch(client, db, sent_campaign, monkeypatch):
    original = recipient_service.mark_engagement

    def flaky(db, recipient_id, event, at=None):
        if event == "clicked":
            raise RuntimeError("deadlock detected")
        return original(db, recipient_id, event, at)

    monkeypatch.setattr(recipient_service, "mark_engagement", flaky)

    response = client.post(
        URL,
        params={"secret": "hook-secret"},
        json=[
            {"event": "clicked", "message-id": "msg-0"},
            {"event": "opened", "message-id": "msg-1"},
        ],
    )

    assert response.status_code == 200
    assert response.json() == {"success": False, "processed": 1, "ignored": 0, "errors": 1}
    assert _recipients(db, sent_campaign.id)["msg-1"].opened_at is not None
