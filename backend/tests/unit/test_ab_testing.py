"""
Unit tests for A/B testing: validation, deterministic assignment, results and
winner selection.
"""
import pytest
from datetime import timedelta
from sqlalchemy import select, update

from mailroom.lib.clock import utcnow
from mailroom.lib.errors import BadRequestException, ConflictException, NotFoundException
from mailroom.models.campaign_history import CampaignAction
from mailroom.models.campaigns import Campaign, CampaignStatus
from mailroom.models.recipients import CampaignRecipient, RecipientStatus
from mailroom.services import history_service
from mailroom.services.ab_testing import (
    ABTestService,
    VariantInput,
    seeded_shuffle,
    shuffle_seed,
    split_counts,
)

from conftest import emails


def _variants(*labels, percentages=None):
    percentages = percentages or [None] * len(labels)
    return [
        VariantInput(variant_label=label, subject=f"Subject {label}", recipient_percentage=p)
        for label, p in zip(labels, percentages)
    ]


def _assignment(db, campaign_id):
    rows = db.execute(
        select(CampaignRecipient.email, CampaignRecipient.variant_id)
        .where(CampaignRecipient.campaign_id == campaign_id)
        .order_by(CampaignRecipient.seq)
    )
    return {email: variant_id for email, variant_id in rows}


# ============================================================================
# Split helpers
# ============================================================================


@pytest.mark.unit
@pytest.mark.parametrize(
    "total,percentages,expected",
    [
        (10, [None, None], [5, 5]),
        (11, [None, None], [6, 5]),
        (10, [None, None, None], [4, 3, 3]),
        (101, [50, 50], [51, 50]),
        (10, [70, 30], [7, 3]),
        (10, [34, 33, 33], [4, 3, 3]),
        (0, [None, None], [0, 0]),
    ],
)
def test_split_counts(total, percentages, expected):
    counts = split_counts(total, percentages)
    assert counts == expected
    assert sum(counts) == total


@pytest.mark.unit
def test_seeded_shuffle_is_deterministic():
    items = list(range(100))
    seed = shuffle_seed("6f1c3a52-3c8e-4f7b-9d7e-0a1b2c3d4e5f")

    assert seeded_shuffle(items, seed) == seeded_shuffle(items, seed)
    assert sorted(seeded_shuffle(items, seed)) == items
    assert items == list(range(100))


# ============================================================================
# Validation
# ============================================================================


@pytest.mark.unit
@pytest.mark.parametrize(
    "variants,code",
    [
        (_variants("A"), "INSUFFICIENT_VARIANTS"),
        (_variants("A", "A"), "DUPLICATE_VARIANT_LABEL"),
        (_variants("A", "B", percentages=[60, 30]), "INVALID_VARIANT_SPLIT"),
        (_variants("A", "B", percentages=[100, None]), "INVALID_VARIANT_SPLIT"),
        (
            [
                VariantInput(variant_label="A", template_id=12, html_content="<p>x</p>"),
                VariantInput(variant_label="B"),
            ],
            "CONFLICTING_CONTENT",
        ),
    ],
)
def test_validate_variants(variants, code):
    with pytest.raises(BadRequestException) as exc_info:
        ABTestService.validate_variants(variants)
    assert exc_info.value.code == code


# ============================================================================
# Create / assign / delete
# ============================================================================


@pytest.mark.unit
def test_create_ab_test_assigns_every_recipient(db, make_campaign, engine_config):
    campaign = make_campaign(emails(11))
    service = ABTestService(db, engine_config)

    variants = service.create_ab_test(campaign.id, _variants("A", "B"), "staff-1")

    assert [v.variant_label for v in variants] == ["A", "B"]
    assert [v.assigned_count for v in variants] == [6, 5]
    assignment = _assignment(db, campaign.id)
    assert None not in assignment.values()
    assert sum(1 for v in assignment.values() if v == variants[0].id) == 6
    assert history_service.count_actions(db, campaign.id, CampaignAction.AB_TEST_CREATED) == 1


@pytest.mark.unit
def test_assignment_is_reproducible(db, make_campaign, engine_config):
    campaign = make_campaign(emails(40))
    service = ABTestService(db, engine_config)
    service.create_ab_test(campaign.id, _variants("A", "B", "C"), "staff-1")
    labels = {v.id: v.variant_label for v in service.list_variants(campaign.id)}
    first = {email: labels[vid] for email, vid in _assignment(db, campaign.id).items()}

    service.create_ab_test(campaign.id, _variants("A", "B", "C"), "staff-1")
    labels = {v.id: v.variant_label for v in service.list_variants(campaign.id)}
    second = {email: labels[vid] for email, vid in _assignment(db, campaign.id).items()}

    assert first == second


@pytest.mark.unit
def test_create_ab_test_requires_draft(db, make_campaign, engine_config):
    campaign = make_campaign(emails(4), status=CampaignStatus.SENDING)

    with pytest.raises(ConflictException) as exc_info:
        ABTestService(db, engine_config).create_ab_test(campaign.id, _variants("A", "B"), "staff-1")

    assert exc_info.value.code == "CAMPAIGN_NOT_DRAFT"


@pytest.mark.unit
def test_delete_ab_test_clears_assignment(db, make_campaign, engine_config):
    campaign = make_campaign(emails(4))
    service = ABTestService(db, engine_config)
    service.create_ab_test(campaign.id, _variants("A", "B"), "staff-1")

    service.delete_ab_test(campaign.id, "staff-1")

    assert service.list_variants(campaign.id) == []
    assert set(_assignment(db, campaign.id).values()) == {None}
    with pytest.raises(NotFoundException):
        service.delete_ab_test(campaign.id, "staff-1")


# ============================================================================
# Results and winner
# ============================================================================


def _simulate(db, campaign_id, variant_id, sent, opened, clicked=0):
    """Mark ``sent`` of the variant's recipients sent, the first ``opened`` of them opened."""
    ids = list(db.scalars(
        select(CampaignRecipient.id)
        .where(CampaignRecipient.campaign_id == campaign_id, CampaignRecipient.variant_id == variant_id)
        .order_by(CampaignRecipient.seq)
    ))
    now = utcnow()
    for index, recipient_id in enumerate(ids[:sent]):
        values = {"status": RecipientStatus.SENT, "sent_at": now}
        if index < opened:
            values["opened_at"] = now + timedelta(minutes=1)
        if index < clicked:
            values["clicked_at"] = now + timedelta(minutes=2)
        db.execute(update(CampaignRecipient).where(CampaignRecipient.id == recipient_id).values(**values))
    db.commit()


def _finish(db, campaign_id):
    db.execute(update(Campaign).where(Campaign.id == campaign_id).values(status=CampaignStatus.COMPLETED))
    db.commit()


@pytest.mark.unit
def test_results_and_winner(db, make_campaign, engine_config):
    campaign = make_campaign(emails(20))
    service = ABTestService(db, engine_config)
    a, b = service.create_ab_test(campaign.id, _variants("A", "B"), "staff-1")
    _simulate(db, campaign.id, a.id, sent=10, opened=3, clicked=1)
    _simulate(db, campaign.id, b.id, sent=10, opened=6, clicked=1)

    assert service.determine_winner(campaign.id) is None

    _finish(db, campaign.id)
    results = service.get_results(campaign.id)
    by_label = {v["variant_label"]: v for v in results["variants"]}
    assert by_label["A"]["open_rate"] == 30.0
    assert by_label["B"]["open_rate"] == 60.0
    assert by_label["B"]["clicked_count"] == 1
    assert by_label["A"]["sent_count"] == by_label["B"]["sent_count"] == 10
    assert results["total_sent"] == 20
    assert results["has_minimum_sample"] is True

    winner = service.determine_winner(campaign.id, "open_rate")
    assert winner["variant_label"] == "B"
    assert winner["value"] == 60.0

    assert service.determine_winner(campaign.id, "click_rate") is None


@pytest.mark.unit
def test_no_winner_below_minimum_sample(db, make_campaign, engine_config):
    config = engine_config.model_copy(update={"ab_min_sample_size": 50})
    campaign = make_campaign(emails(20))
    service = ABTestService(db, config)
    a, b = service.create_ab_test(campaign.id, _variants("A", "B"), "staff-1")
    _simulate(db, campaign.id, a.id, sent=10, opened=1)
    _simulate(db, campaign.id, b.id, sent=10, opened=9)
    _finish(db, campaign.id)

    assert service.determine_winner(campaign.id) is None
    assert service.get_results(campaign.id)["has_minimum_sample"] is False


@pytest.mark.unit
def test_unknown_metric(db, make_campaign, engine_config):
    campaign = make_campaign(emails(2))

    with pytest.raises(BadRequestException) as exc_info:
        ABTestService(db, engine_config).determine_winner(campaign.id, "revenue")

    assert exc_info.value.code == "INVALID_METRIC"
