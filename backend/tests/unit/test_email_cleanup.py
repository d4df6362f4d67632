"""
Unit tests for the daily email cleanup job.
"""
from datetime import timedelta

import pytest
from sqlalchemy import update

from mailroom.jobs.email_cleanup import CLEANUP_LEASE, run_email_cleanup
from mailroom.lib.clock import utcnow
from mailroom.models.campaign_history import CampaignAction
from mailroom.models.campaigns import Campaign, CampaignStatus
from mailroom.models.preorders import ConversionStatus, Preorder
from mailroom.services import history_service, lease_service

from conftest import emails


def _age(db, campaign, days):
    db.execute(
        update(Campaign)
        .where(Campaign.id == campaign.id)
        .values(created_at=utcnow() - timedelta(days=days))
    )
    db.commit()


def _exists(db, campaign_id) -> bool:
    return db.get(Campaign, campaign_id, populate_existing=True) is not None


@pytest.fixture
def preorders(db):
    now = utcnow()

    def preorder(email, status, expires_at):
        return Preorder(
            email=email,
            full_name="Pre Order",
            box_type="monthly",
            conversion_status=status,
            conversion_token=f"token-{email}",
            conversion_token_expires_at=expires_at,
        )

    rows = {
        "expired": preorder("expired@example.com", ConversionStatus.PENDING, now - timedelta(days=1)),
        "valid": preorder("valid@example.com", ConversionStatus.PENDING, now + timedelta(days=6)),
        "converted": preorder("converted@example.com", ConversionStatus.CONVERTED, now - timedelta(days=9)),
        "no_token": preorder("none@example.com", ConversionStatus.PENDING, None),
    }
    db.add_all(rows.values())
    db.commit()
    return rows


@pytest.mark.unit
def test_deletes_only_old_empty_drafts(db, make_campaign, engine_config):
    stale = make_campaign([], name="Forgotten draft")
    history_service.record_action(db, stale.id, CampaignAction.CREATED, "staff-1")
    db.commit()
    _age(db, stale, 45)
    recent = make_campaign([], name="Fresh draft")
    _age(db, recent, 3)
    with_recipients = make_campaign(emails(2), name="Old but populated")
    _age(db, with_recipients, 45)
    finished = make_campaign([], name="Old completed", status=CampaignStatus.COMPLETED)
    _age(db, finished, 45)

    summary = run_email_cleanup(db)

    assert summary["skipped"] is False
    assert summary["drafts_deleted"] == 1
    assert not _exists(db, stale.id)
    assert history_service.count_actions(db, stale.id) == 0
    assert _exists(db, recent.id)
    assert _exists(db, with_recipients.id)
    assert _exists(db, finished.id)


@pytest.mark.unit
def test_retention_period_is_configurable(db, make_campaign, engine_config):
    draft = make_campaign([])
    _age(db, draft, 10)

    assert run_email_cleanup(db)["drafts_deleted"] == 0
    assert run_email_cleanup(db, retention_days=7)["drafts_deleted"] == 1


@pytest.mark.unit
def test_expires_lapsed_conversion_tokens(db, engine_config, preorders):
    summary = run_email_cleanup(db)

    assert summary["tokens_expired"] == 1
    statuses = {
        key: db.get(Preorder, row.id, populate_existing=True).conversion_status
        for key, row in preorders.items()
    }
    assert statuses == {
        "expired": ConversionStatus.EXPIRED,
        "valid": ConversionStatus.PENDING,
        "converted": ConversionStatus.CONVERTED,
        "no_token": ConversionStatus.PENDING,
    }


@pytest.mark.unit
def test_overlapping_cleanup_is_skipped(db, make_campaign, engine_config):
    draft = make_campaign([])
    _age(db, draft, 45)
    assert lease_service.acquire_lease(db, CLEANUP_LEASE, "other-run", 120)

    summary = run_email_cleanup(db)

    assert summary["skipped"] is True
    assert _exists(db, draft.id)


@pytest.mark.unit
def test_cleanup_lease_is_released(db, engine_config):
    run_email_cleanup(db)
    run_email_cleanup(db)

    lease = lease_service.get_lease(db, CLEANUP_LEASE)
    assert lease.holder is None
    assert lease.run_count == 2
