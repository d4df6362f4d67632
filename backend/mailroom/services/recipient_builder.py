"""
Recipient builder.

Snapshots a campaign's audience into ``email_campaign_recipients``. Later
changes to the source tables do not affect a built campaign; addresses that
unsubscribe after the build are caught at send time by the engine.

Strategies (one per campaign type):
- preorder-conversion: pending preorders with a live conversion token and
  marketing consent (GDPR)
- lifecycle: newsletter subscribers by status and tags
- promotional: registered customers by order history

The caller clears existing recipients first; ``build`` only appends.
"""
from typing import Callable, Iterator, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from mailroom.lib.clock import utcnow
from mailroom.lib.config_flags import EngineConfig, get_engine_config
from mailroom.lib.logging import get_logger
from mailroom.lib.settings import settings
from mailroom.models.campaigns import CampaignType
from mailroom.models.customers import Customer
from mailroom.models.preorders import Preorder, ConversionStatus
from mailroom.models.subscribers import NewsletterSubscriber
from mailroom.schemas.filters import (
    LifecycleFilter,
    PreorderConversionFilter,
    PromotionalFilter,
    parse_target_filter,
)
from mailroom.services import recipient_service, unsubscribe_service
from mailroom.services.recipient_service import RecipientInput


logger = get_logger(__name__)


def _first_name(full_name: Optional[str]) -> Optional[str]:
    if not full_name:
        return None
    return full_name.strip().split(" ")[0] or None


def _price(value) -> Optional[float]:
    return float(value) if value is not None else None


class RecipientBuilder:
    """Builds and persists campaign recipient sets."""

    def __init__(self, db: Session, config: Optional[EngineConfig] = None):
        self.db = db
        self.config = config or get_engine_config()
        self._strategies: dict[CampaignType, Callable[..., Iterator[RecipientInput]]] = {
            CampaignType.PREORDER_CONVERSION: self._preorder_conversion,
            CampaignType.LIFECYCLE: self._lifecycle,
            CampaignType.PROMOTIONAL: self._promotional,
        }

    def build(self, campaign_id: UUID, campaign_type: CampaignType, target_filter) -> int:
        """
        Compute and insert the recipient set. Does not commit.

        Args:
            campaign_id: Campaign whose recipients were already cleared
            campaign_type: Selects the strategy
            target_filter: Filter model or raw dict for ``campaign_type``

        Returns:
            Number of recipients inserted
        """
        campaign_type = CampaignType(campaign_type)
        if isinstance(target_filter, dict) or target_filter is None:
            target_filter = parse_target_filter(campaign_type, target_filter)

        candidates = self._collect(self._strategies[campaign_type](target_filter))
        excluded = unsubscribe_service.unsubscribed_among(self.db, [c.email for c in candidates])
        recipients = [c for c in candidates if c.email not in excluded]

        count = recipient_service.add_recipients(self.db, campaign_id, recipients)
        logger.info(
            f"Built {count} recipients for campaign {campaign_id}",
            extra={
                "campaign_id": str(campaign_id),
                "campaign_type": campaign_type.value,
                "candidates": len(candidates),
                "unsubscribed_excluded": len(excluded),
            },
        )
        return count

    def _collect(self, rows: Iterator[RecipientInput]) -> list[RecipientInput]:
        """Normalise, de-duplicate (first occurrence wins) and cap."""
        seen: set[str] = set()
        result: list[RecipientInput] = []
        for row in rows:
            email = unsubscribe_service.normalize_email(row.email or "")
            if not email or "@" not in email or email in seen:
                continue
            seen.add(email)
            row.email = email
            result.append(row)
            if len(result) >= self.config.max_recipients:
                logger.warning(
                    f"Recipient cap of {self.config.max_recipients} reached, remaining contacts ignored"
                )
                break
        return result

    # ===== Strategies =====

    def _preorder_conversion(self, target: PreorderConversionFilter) -> Iterator[RecipientInput]:
        stmt = select(Preorder).where(
            Preorder.conversion_status == ConversionStatus.PENDING,
            Preorder.conversion_token.is_not(None),
            Preorder.conversion_token_expires_at > utcnow(),
            Preorder.email_consent.is_(True),
        )
        if target.box_type:
            stmt = stmt.where(Preorder.box_type == target.box_type)
        if target.created_from:
            stmt = stmt.where(Preorder.created_at >= target.created_from)
        if target.created_to:
            stmt = stmt.where(Preorder.created_at < target.created_to)
        stmt = stmt.order_by(Preorder.created_at, Preorder.id)

        for preorder in self.db.scalars(stmt):
            yield RecipientInput(
                email=preorder.email,
                full_name=preorder.full_name,
                params={
                    "fullName": preorder.full_name,
                    "firstName": _first_name(preorder.full_name),
                    "boxType": preorder.box_type,
                    "conversionUrl": f"{settings.site_url}/order/convert?token={preorder.conversion_token}",
                    "promoCode": preorder.promo_code,
                    "originalPriceEur": _price(preorder.original_price_eur),
                    "finalPriceEur": _price(preorder.final_price_eur),
                },
            )

    def _lifecycle(self, target: LifecycleFilter) -> Iterator[RecipientInput]:
        stmt = select(NewsletterSubscriber).where(NewsletterSubscriber.status == target.status)
        if target.box_type:
            stmt = stmt.where(NewsletterSubscriber.box_type == target.box_type)
        stmt = stmt.order_by(NewsletterSubscriber.created_at, NewsletterSubscriber.id)

        wanted = set(target.tags)
        for subscriber in self.db.scalars(stmt):
            if wanted and not wanted.intersection(subscriber.tags or []):
                continue
            yield RecipientInput(
                email=subscriber.email,
                full_name=subscriber.full_name,
                params={
                    "firstName": _first_name(subscriber.full_name),
                    "boxType": subscriber.box_type,
                },
            )

    def _promotional(self, target: PromotionalFilter) -> Iterator[RecipientInput]:
        stmt = select(Customer)
        if target.has_ordered is True:
            stmt = stmt.where(Customer.order_count > 0)
        elif target.has_ordered is False:
            stmt = stmt.where(Customer.order_count == 0)
        if target.last_order_before:
            stmt = stmt.where(Customer.last_order_at < target.last_order_before)
        if target.registered_after:
            stmt = stmt.where(Customer.created_at >= target.registered_after)
        stmt = stmt.order_by(Customer.created_at, Customer.id)

        for customer in self.db.scalars(stmt):
            yield RecipientInput(
                email=customer.email,
                full_name=customer.full_name,
                params={"firstName": _first_name(customer.full_name)},
            )
