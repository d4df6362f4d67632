"""
Unit tests for the recipient builder strategies.
"""
import pytest
from datetime import timedelta
from decimal import Decimal

from mailroom.lib.clock import utcnow
from mailroom.lib.errors import ValidationException
from mailroom.models.campaigns import CampaignType
from mailroom.models.customers import Customer
from mailroom.models.preorders import ConversionStatus, Preorder
from mailroom.models.subscribers import NewsletterSubscriber
from mailroom.services import recipient_service, unsubscribe_service
from mailroom.services.recipient_builder import RecipientBuilder


def _preorder(**overrides) -> Preorder:
    values = dict(
        email="ana@example.com",
        full_name="Ana Petrova",
        box_type="premium",
        conversion_status=ConversionStatus.PENDING,
        conversion_token="tok-ana",
        conversion_token_expires_at=utcnow() + timedelta(days=7),
        email_consent=True,
        promo_code="SPRING10",
        original_price_eur=Decimal("49.90"),
        final_price_eur=Decimal("44.91"),
    )
    values.update(overrides)
    return Preorder(**values)


def _emails(db, campaign_id):
    recipients, _ = recipient_service.list_recipients(db, campaign_id, limit=500)
    return [r.email for r in recipients]


@pytest.mark.unit
def test_preorder_conversion_selects_eligible_preorders(db, make_campaign, engine_config):
    now = utcnow()
    db.add_all([
        _preorder(created_at=now - timedelta(hours=3)),
        _preorder(email="converted@example.com", conversion_token="tok-2",
                  conversion_status=ConversionStatus.CONVERTED),
        _preorder(email="expired@example.com", conversion_token="tok-3",
                  conversion_token_expires_at=now - timedelta(minutes=1)),
        _preorder(email="notoken@example.com", conversion_token=None),
        _preorder(email="noconsent@example.com", conversion_token="tok-5", email_consent=False),
        _preorder(email="classic@example.com", conversion_token="tok-6", box_type="classic",
                  created_at=now - timedelta(hours=2)),
    ])
    db.commit()
    campaign = make_campaign([], campaign_type=CampaignType.PREORDER_CONVERSION)

    count = RecipientBuilder(db, engine_config).build(campaign.id, CampaignType.PREORDER_CONVERSION, {})
    db.commit()

    assert count == 2
    assert _emails(db, campaign.id) == ["ana@example.com", "classic@example.com"]

    recipients, _ = recipient_service.list_recipients(db, campaign.id)
    params = recipients[0].params
    assert params["firstName"] == "Ana"
    assert params["boxType"] == "premium"
    assert params["promoCode"] == "SPRING10"
    assert params["finalPriceEur"] == pytest.approx(44.91)
    assert params["conversionUrl"].endswith("token=tok-ana")


@pytest.mark.unit
def test_preorder_conversion_box_filter(db, make_campaign, engine_config):
    db.add_all([
        _preorder(),
        _preorder(email="classic@example.com", conversion_token="tok-2", box_type="classic"),
    ])
    db.commit()
    campaign = make_campaign([], campaign_type=CampaignType.PREORDER_CONVERSION)

    count = RecipientBuilder(db, engine_config).build(
        campaign.id, CampaignType.PREORDER_CONVERSION, {"box_type": "classic"}
    )

    assert count == 1
    assert _emails(db, campaign.id) == ["classic@example.com"]


@pytest.mark.unit
def test_lifecycle_filters_by_status_and_tags(db, make_campaign, engine_config):
    now = utcnow()
    db.add_all([
        NewsletterSubscriber(email="a@example.com", tags=["vip", "spring"], created_at=now - timedelta(minutes=3)),
        NewsletterSubscriber(email="b@example.com", tags=["winter"], created_at=now - timedelta(minutes=2)),
        NewsletterSubscriber(email="c@example.com", tags=["spring"], status="unsubscribed"),
        NewsletterSubscriber(email="d@example.com", tags=["spring"], created_at=now - timedelta(minutes=1)),
    ])
    db.commit()
    campaign = make_campaign([], campaign_type=CampaignType.LIFECYCLE)

    count = RecipientBuilder(db, engine_config).build(campaign.id, CampaignType.LIFECYCLE, {"tags": ["spring"]})

    assert count == 2
    assert _emails(db, campaign.id) == ["a@example.com", "d@example.com"]


@pytest.mark.unit
def test_promotional_filters(db, make_campaign, engine_config):
    now = utcnow()
    db.add_all([
        Customer(email="never@example.com", order_count=0, created_at=now - timedelta(days=10)),
        Customer(email="lapsed@example.com", order_count=3, last_order_at=now - timedelta(days=90),
                 created_at=now - timedelta(days=9)),
        Customer(email="recent@example.com", order_count=1, last_order_at=now - timedelta(days=2),
                 created_at=now - timedelta(days=8)),
    ])
    db.commit()
    builder = RecipientBuilder(db, engine_config)

    lapsed = make_campaign([], name="Win-back")
    builder.build(lapsed.id, CampaignType.PROMOTIONAL, {
        "has_ordered": True,
        "last_order_before": (now - timedelta(days=30)).isoformat(),
    })
    assert _emails(db, lapsed.id) == ["lapsed@example.com"]

    first_order = make_campaign([], name="First order")
    builder.build(first_order.id, CampaignType.PROMOTIONAL, {"has_ordered": False})
    assert _emails(db, first_order.id) == ["never@example.com"]


@pytest.mark.unit
def test_normalises_deduplicates_and_excludes_unsubscribed(db, make_campaign, engine_config):
    now = utcnow()
    db.add_all([
        Customer(email="  Mixed.Case@Example.com ", created_at=now - timedelta(minutes=3)),
        Customer(email="blocked@example.com", created_at=now - timedelta(minutes=2)),
        Customer(email="ok@example.com", created_at=now - timedelta(minutes=1)),
    ])
    db.commit()
    unsubscribe_service.record_unsubscribe(db, "BLOCKED@example.com", source="admin")
    campaign = make_campaign([])

    count = RecipientBuilder(db, engine_config).build(campaign.id, CampaignType.PROMOTIONAL, {})

    assert count == 2
    assert _emails(db, campaign.id) == ["mixed.case@example.com", "ok@example.com"]


@pytest.mark.unit
def test_recipient_cap(db, make_campaign, engine_config):
    now = utcnow()
    db.add_all([
        Customer(email=f"c{i}@example.com", created_at=now - timedelta(minutes=10 - i)) for i in range(5)
    ])
    db.commit()
    config = engine_config.model_copy(update={"max_recipients": 3})
    campaign = make_campaign([])

    count = RecipientBuilder(db, config).build(campaign.id, CampaignType.PROMOTIONAL, {})

    assert count == 3
    assert _emails(db, campaign.id) == ["c0@example.com", "c1@example.com", "c2@example.com"]


@pytest.mark.unit
def test_filter_for_another_type_is_rejected(db, make_campaign, engine_config):
    campaign = make_campaign([])

    with pytest.raises(ValidationException):
        RecipientBuilder(db, engine_config).build(campaign.id, CampaignType.PROMOTIONAL, {"tags": ["vip"]})
