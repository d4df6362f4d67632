"""
A/B testing for campaigns.

Recipients are split across variants by a deterministic shuffle seeded from
the campaign id followed by a contiguous split, so re-running the assignment
over the same recipient ordering reproduces the same mapping. Winners are
reported, never rolled out automatically.
"""
import hashlib
import random
from fractions import Fraction
from typing import Any, Optional, Sequence
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy import select, update, delete, func
from sqlalchemy.orm import Session

from mailroom.lib.config_flags import EngineConfig, get_engine_config
from mailroom.lib.errors import BadRequestException, ConflictException, NotFoundException
from mailroom.lib.logging import get_logger
from mailroom.models.ab_variants import ABVariant
from mailroom.models.campaign_history import CampaignAction
from mailroom.models.campaigns import Campaign, CampaignStatus, TERMINAL_STATUSES
from mailroom.models.recipients import CampaignRecipient
from mailroom.services import history_service


logger = get_logger(__name__)

WINNER_METRICS = ("open_rate", "click_rate")

_UPDATE_BATCH = 500


class VariantInput(BaseModel):
    """One variant of an A/B test."""
    variant_label: str = Field(..., min_length=1, max_length=32)
    subject: Optional[str] = Field(None, max_length=998)
    template_id: Optional[int] = Field(None, gt=0)
    html_content: Optional[str] = None
    params: dict[str, Any] = Field(default_factory=dict)
    recipient_percentage: Optional[int] = Field(None, gt=0, le=100)


def shuffle_seed(campaign_id: UUID) -> int:
    digest = hashlib.sha256(str(campaign_id).encode()).digest()
    return int.from_bytes(digest[:8], byteorder="big")


def seeded_shuffle(items: Sequence, seed: int) -> list:
    shuffled = list(items)
    random.Random(seed).shuffle(shuffled)
    return shuffled


def split_counts(total: int, percentages: Sequence[Optional[int]]) -> list[int]:
    """
    Partition ``total`` into one count per variant.

    Even split when no percentages are given; otherwise each variant gets the
    floor of its share. Leftovers go one each to the earliest variants, so
    counts always add up to ``total``.
    """
    n = len(percentages)
    if n == 0:
        return []
    if all(p is None for p in percentages):
        counts = [total // n] * n
    else:
        counts = [total * p // 100 for p in percentages]
    leftover = total - sum(counts)
    for i in range(leftover):
        counts[i % n] += 1
    return counts


class ABTestService:
    """Creates A/B tests, assigns recipients and evaluates results."""

    def __init__(self, db: Session, config: Optional[EngineConfig] = None):
        self.db = db
        self.config = config or get_engine_config()

    def _get_campaign(self, campaign_id: UUID) -> Campaign:
        campaign = self.db.get(Campaign, campaign_id, populate_existing=True)
        if campaign is None:
            raise NotFoundException("Campaign", str(campaign_id))
        return campaign

    def _require_draft(self, campaign: Campaign, action: str) -> None:
        if campaign.status != CampaignStatus.DRAFT:
            raise ConflictException(
                f"A/B tests can only be {action} while the campaign is a draft",
                details={"current": campaign.status.value},
                code="CAMPAIGN_NOT_DRAFT",
            )

    def list_variants(self, campaign_id: UUID) -> list[ABVariant]:
        stmt = (
            select(ABVariant)
            .where(ABVariant.campaign_id == campaign_id)
            .order_by(ABVariant.variant_label)
            .execution_options(populate_existing=True)
        )
        return list(self.db.scalars(stmt))

    @staticmethod
    def validate_variants(variants: Sequence[VariantInput]) -> None:
        if len(variants) < 2:
            raise BadRequestException(
                "An A/B test requires at least 2 variants",
                details={"variants": len(variants)},
                code="INSUFFICIENT_VARIANTS",
            )

        labels = [v.variant_label for v in variants]
        if len(set(labels)) != len(labels):
            raise BadRequestException(
                "Variant labels must be unique",
                details={"labels": labels},
                code="DUPLICATE_VARIANT_LABEL",
            )

        for v in variants:
            if v.template_id is not None and v.html_content:
                raise BadRequestException(
                    f"Variant {v.variant_label} sets both template_id and html_content",
                    code="CONFLICTING_CONTENT",
                )

        percentages = [v.recipient_percentage for v in variants]
        given = [p for p in percentages if p is not None]
        if given and (len(given) != len(percentages) or sum(given) != 100):
            raise BadRequestException(
                "Variant percentages must be given for every variant and sum to 100",
                details={"percentages": percentages},
                code="INVALID_VARIANT_SPLIT",
            )

    def create_ab_test(
        self,
        campaign_id: UUID,
        variants: Sequence[VariantInput],
        actor: str,
    ) -> list[ABVariant]:
        """
        Replace the campaign's variants and assign its current recipients.

        Raises:
            ConflictException: campaign is not a draft
            BadRequestException: fewer than 2 variants, duplicate labels, bad split
        """
        campaign = self._get_campaign(campaign_id)
        self._require_draft(campaign, "created")
        self.validate_variants(variants)

        try:
            self._clear_variants(campaign_id)
            created = [
                ABVariant(
                    campaign_id=campaign_id,
                    variant_label=v.variant_label,
                    subject=v.subject,
                    template_id=v.template_id,
                    html_content=v.html_content,
                    params=v.params,
                    recipient_percentage=v.recipient_percentage,
                )
                for v in variants
            ]
            self.db.add_all(created)
            self.db.flush()

            assignment = self.assign_recipients(campaign_id)

            history_service.record_action(
                self.db,
                campaign_id,
                CampaignAction.AB_TEST_CREATED,
                actor,
                metadata={"variants": [v.variant_label for v in variants], "assignment": assignment},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Created A/B test with {len(created)} variants for campaign {campaign_id}",
            extra={"campaign_id": str(campaign_id), "assignment": assignment},
        )
        return self.list_variants(campaign_id)

    def assign_recipients(self, campaign_id: UUID) -> dict[str, int]:
        """
        Assign every recipient of the campaign to a variant. Does not commit.

        Returns:
            Recipient count per variant label (empty when there is no A/B test)
        """
        variants = self.list_variants(campaign_id)
        if not variants:
            return {}

        recipient_ids = list(self.db.scalars(
            select(CampaignRecipient.id)
            .where(CampaignRecipient.campaign_id == campaign_id)
            .order_by(CampaignRecipient.seq)
        ))
        shuffled = seeded_shuffle(recipient_ids, shuffle_seed(campaign_id))
        counts = split_counts(len(shuffled), [v.recipient_percentage for v in variants])

        assignment: dict[str, int] = {}
        offset = 0
        for variant, count in zip(variants, counts):
            ids = shuffled[offset:offset + count]
            offset += count
            for i in range(0, len(ids), _UPDATE_BATCH):
                self.db.execute(
                    update(CampaignRecipient)
                    .where(CampaignRecipient.id.in_(ids[i:i + _UPDATE_BATCH]))
                    .values(variant_id=variant.id)
                    .execution_options(synchronize_session=False)
                )
            variant.assigned_count = count
            assignment[variant.variant_label] = count

        self.db.flush()
        return assignment

    def _clear_variants(self, campaign_id: UUID) -> None:
        self.db.execute(
            update(CampaignRecipient)
            .where(CampaignRecipient.campaign_id == campaign_id)
            .values(variant_id=None)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(
            delete(ABVariant)
            .where(ABVariant.campaign_id == campaign_id)
            .execution_options(synchronize_session=False)
        )
        self.db.expire_all()

    def delete_ab_test(self, campaign_id: UUID, actor: str) -> None:
        campaign = self._get_campaign(campaign_id)
        self._require_draft(campaign, "deleted")
        variants = self.list_variants(campaign_id)
        if not variants:
            raise NotFoundException("A/B test", str(campaign_id))

        try:
            self._clear_variants(campaign_id)
            history_service.record_action(
                self.db,
                campaign_id,
                CampaignAction.AB_TEST_DELETED,
                actor,
                metadata={"variants": [v.variant_label for v in variants]},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"Deleted A/B test for campaign {campaign_id}", extra={"campaign_id": str(campaign_id)})

    def _variant_counts(self, campaign_id: UUID) -> dict[UUID, dict[str, int]]:
        rows = self.db.execute(
            select(
                CampaignRecipient.variant_id,
                func.count(CampaignRecipient.sent_at),
                func.count(CampaignRecipient.opened_at),
                func.count(CampaignRecipient.clicked_at),
            )
            .where(
                CampaignRecipient.campaign_id == campaign_id,
                CampaignRecipient.variant_id.is_not(None),
            )
            .group_by(CampaignRecipient.variant_id)
        )
        return {
            variant_id: {"sent": sent, "opened": opened, "clicked": clicked}
            for variant_id, sent, opened, clicked in rows
        }

    def _rates(self, campaign_id: UUID) -> list[dict[str, Any]]:
        counts = self._variant_counts(campaign_id)
        results = []
        for variant in self.list_variants(campaign_id):
            c = counts.get(variant.id, {"sent": 0, "opened": 0, "clicked": 0})
            sent = c["sent"]
            results.append({
                "variant": variant,
                "sent": sent,
                "opened": c["opened"],
                "clicked": c["clicked"],
                "open_rate": Fraction(c["opened"], sent) if sent else Fraction(0),
                "click_rate": Fraction(c["clicked"], sent) if sent else Fraction(0),
            })
        return results

    def get_results(self, campaign_id: UUID) -> dict[str, Any]:
        """Per-variant sent/opened/clicked counts and rates (percent, one decimal)."""
        self._get_campaign(campaign_id)
        rates = self._rates(campaign_id)
        min_sample = self.config.ab_min_sample_size
        return {
            "campaign_id": str(campaign_id),
            "variants": [
                {
                    "id": str(r["variant"].id),
                    "variant_label": r["variant"].variant_label,
                    "subject": r["variant"].subject,
                    "template_id": r["variant"].template_id,
                    "recipient_percentage": r["variant"].recipient_percentage,
                    "assigned_count": r["variant"].assigned_count,
                    "sent_count": r["sent"],
                    "opened_count": r["opened"],
                    "clicked_count": r["clicked"],
                    "open_rate": round(float(r["open_rate"]) * 100, 1),
                    "click_rate": round(float(r["click_rate"]) * 100, 1),
                }
                for r in rates
            ],
            "total_sent": sum(r["sent"] for r in rates),
            "min_sample_size": min_sample,
            "has_minimum_sample": bool(rates) and all(r["sent"] >= min_sample for r in rates),
        }

    def determine_winner(self, campaign_id: UUID, metric: str = "open_rate") -> Optional[dict[str, Any]]:
        """
        Pick the variant with the highest ``metric``.

        Returns None while the campaign is still running, when any variant is
        below the minimum sample, or when the best value is shared.
        """
        if metric not in WINNER_METRICS:
            raise BadRequestException(
                f"Unknown metric '{metric}'",
                details={"allowed": list(WINNER_METRICS)},
                code="INVALID_METRIC",
            )

        campaign = self._get_campaign(campaign_id)
        if campaign.status not in TERMINAL_STATUSES:
            return None

        rates = self._rates(campaign_id)
        if len(rates) < 2:
            return None
        if any(r["sent"] < self.config.ab_min_sample_size for r in rates):
            return None

        best_value = max(r[metric] for r in rates)
        leaders = [r for r in rates if r[metric] == best_value]
        if len(leaders) != 1:
            return None

        winner = leaders[0]
        return {
            "variant_id": str(winner["variant"].id),
            "variant_label": winner["variant"].variant_label,
            "metric": metric,
            "value": round(float(best_value) * 100, 1),
        }
