"""
Campaign lifecycle state machine.

Every status change goes through ``CampaignLifecycle``: it is validated
against ``ALLOWED_TRANSITIONS``, applied with a conditional UPDATE on the
status the campaign was read in, and committed together with exactly one
history row. An illegal or lost transition raises
``InvalidTransitionException`` and leaves the campaign untouched.

    draft ──> scheduled ──> sending <──> paused
      │                       │  │
      └──────> sending        │  └──> completed | failed
                              └──────> cancelled (also from scheduled, paused)
"""
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, update, func
from sqlalchemy.orm import Session

from mailroom.lib.clock import as_utc, utcnow
from mailroom.lib.errors import BadRequestException, InvalidTransitionException, NotFoundException
from mailroom.lib.logging import get_logger
from mailroom.lib.metrics import get_metrics_collector
from mailroom.models.ab_variants import ABVariant
from mailroom.models.campaign_history import CampaignAction
from mailroom.models.campaigns import Campaign, CampaignStatus
from mailroom.services import history_service


logger = get_logger(__name__)


ALLOWED_TRANSITIONS: dict[CampaignStatus, frozenset[CampaignStatus]] = {
    CampaignStatus.DRAFT: frozenset({CampaignStatus.SENDING, CampaignStatus.SCHEDULED}),
    CampaignStatus.SCHEDULED: frozenset({CampaignStatus.SENDING, CampaignStatus.CANCELLED}),
    CampaignStatus.SENDING: frozenset({
        CampaignStatus.PAUSED,
        CampaignStatus.COMPLETED,
        CampaignStatus.FAILED,
        CampaignStatus.CANCELLED,
    }),
    CampaignStatus.PAUSED: frozenset({CampaignStatus.SENDING, CampaignStatus.CANCELLED}),
    CampaignStatus.COMPLETED: frozenset(),
    CampaignStatus.FAILED: frozenset(),
    CampaignStatus.CANCELLED: frozenset(),
}


def can_transition(current: CampaignStatus, requested: CampaignStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS.get(current, frozenset())


def has_usable_content(db: Session, campaign: Campaign) -> bool:
    """Campaign content, or content on every A/B variant."""
    if campaign.has_content:
        return True
    variants = list(db.scalars(select(ABVariant).where(ABVariant.campaign_id == campaign.id)))
    return bool(variants) and all(v.template_id is not None or v.html_content for v in variants)


class CampaignLifecycle:
    """Validates and applies campaign status transitions with audit history."""

    def __init__(self, db: Session):
        self.db = db
        self.metrics = get_metrics_collector()

    def _load(self, campaign_id: UUID) -> Campaign:
        campaign = self.db.get(Campaign, campaign_id, populate_existing=True)
        if campaign is None:
            raise NotFoundException("Campaign", str(campaign_id))
        return campaign

    def _check(self, campaign: Campaign, requested: CampaignStatus) -> None:
        if not can_transition(campaign.status, requested):
            raise InvalidTransitionException(
                current=campaign.status.value,
                requested=requested.value,
                campaign_id=str(campaign.id),
            )

    def _transition(
        self,
        campaign: Campaign,
        requested: CampaignStatus,
        action: CampaignAction,
        actor: str,
        values: Optional[dict[str, Any]] = None,
        notes: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Campaign:
        self._check(campaign, requested)
        current = campaign.status
        now = utcnow()

        try:
            result = self.db.execute(
                update(Campaign)
                .where(Campaign.id == campaign.id, Campaign.status == current)
                .values(status=requested, updated_at=now, updated_by=actor, **(values or {}))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Someone else moved the campaign since we read it
                self.db.rollback()
                latest = self._load(campaign.id)
                raise InvalidTransitionException(
                    current=latest.status.value,
                    requested=requested.value,
                    campaign_id=str(campaign.id),
                )

            history_service.record_action(
                self.db,
                campaign.id,
                action,
                actor,
                notes=notes,
                metadata={"from": current.value, "to": requested.value, **(metadata or {})},
            )
            self.db.commit()
        except InvalidTransitionException:
            raise
        except Exception:
            self.db.rollback()
            raise

        self.metrics.increment_transitions(current.value, requested.value)
        logger.info(
            f"Campaign {campaign.id}: {current.value} -> {requested.value}",
            extra={"campaign_id": str(campaign.id), "actor": actor, "action": action.value},
        )
        return self._load(campaign.id)

    def start(self, campaign_id: UUID, actor: str, triggered_by: str = "manual") -> Campaign:
        """
        draft | scheduled -> sending.

        Raises:
            InvalidTransitionException: not draft or scheduled
            BadRequestException: no recipients or no content
        """
        campaign = self._load(campaign_id)
        self._check(campaign, CampaignStatus.SENDING)

        if campaign.total_recipients <= 0:
            raise BadRequestException(
                "Campaign has no recipients",
                details={"campaign_id": str(campaign_id)},
                code="NO_RECIPIENTS",
            )
        if not has_usable_content(self.db, campaign):
            raise BadRequestException(
                "Campaign has neither a template nor HTML content",
                details={"campaign_id": str(campaign_id)},
                code="MISSING_CONTENT",
            )

        metadata: dict[str, Any] = {
            "triggered_by": triggered_by,
            "total_recipients": campaign.total_recipients,
        }
        notes = None
        if triggered_by == "cron":
            scheduled_at = as_utc(campaign.scheduled_at)
            metadata["scheduled_at"] = scheduled_at.isoformat() if scheduled_at else None
            notes = "Started automatically on schedule"

        return self._transition(
            campaign,
            CampaignStatus.SENDING,
            CampaignAction.STARTED,
            actor,
            values={"started_at": utcnow()},
            notes=notes,
            metadata=metadata,
        )

    def schedule(self, campaign_id: UUID, actor: str, scheduled_at: datetime) -> Campaign:
        """draft -> scheduled. ``scheduled_at`` must lie in the future."""
        campaign = self._load(campaign_id)
        self._check(campaign, CampaignStatus.SCHEDULED)

        scheduled_at = as_utc(scheduled_at)
        if scheduled_at <= utcnow():
            raise BadRequestException(
                "scheduled_at must be in the future",
                details={"scheduled_at": scheduled_at.isoformat()},
                code="INVALID_SCHEDULE",
            )

        return self._transition(
            campaign,
            CampaignStatus.SCHEDULED,
            CampaignAction.SCHEDULED,
            actor,
            values={"scheduled_at": scheduled_at},
            metadata={"scheduled_at": scheduled_at.isoformat()},
        )

    def pause(self, campaign_id: UUID, actor: str, reason: Optional[str] = None) -> Campaign:
        """sending -> paused. Takes effect at the next chunk boundary."""
        campaign = self._load(campaign_id)
        return self._transition(
            campaign,
            CampaignStatus.PAUSED,
            CampaignAction.PAUSED,
            actor,
            notes=reason,
            metadata={"sent_count": campaign.sent_count},
        )

    def resume(self, campaign_id: UUID, actor: str) -> Campaign:
        """paused -> sending."""
        campaign = self._load(campaign_id)
        return self._transition(campaign, CampaignStatus.SENDING, CampaignAction.RESUMED, actor)

    def cancel(self, campaign_id: UUID, actor: str, reason: Optional[str] = None) -> Campaign:
        """
        scheduled | sending | paused -> cancelled.

        Pending recipients are kept as they are for audit.
        """
        campaign = self._load(campaign_id)
        return self._transition(
            campaign,
            CampaignStatus.CANCELLED,
            CampaignAction.CANCELLED,
            actor,
            values={"completed_at": utcnow()},
            notes=reason,
            metadata={"sent_count": campaign.sent_count, "previous_status": campaign.status.value},
        )

    def complete(self, campaign_id: UUID, actor: str, metadata: Optional[dict[str, Any]] = None) -> Campaign:
        """sending -> completed. Called by the engine once nothing is pending."""
        campaign = self._load(campaign_id)
        return self._transition(
            campaign,
            CampaignStatus.COMPLETED,
            CampaignAction.COMPLETED,
            actor,
            values={"completed_at": utcnow()},
            metadata={
                "sent_count": campaign.sent_count,
                "failed_count": campaign.failed_count,
                "skipped_count": campaign.skipped_count,
                **(metadata or {}),
            },
        )

    def fail(self, campaign_id: UUID, actor: str, error: str) -> Campaign:
        """sending -> failed. Used by the engine when the campaign cannot be sent at all."""
        campaign = self._load(campaign_id)
        return self._transition(
            campaign,
            CampaignStatus.FAILED,
            CampaignAction.FAILED,
            actor,
            values={"completed_at": utcnow()},
            notes=error,
            metadata={"error": error},
        )


def count_by_status(db: Session) -> dict[str, int]:
    """Campaign counts per status (dashboard summary)."""
    counts = {status.value: 0 for status in CampaignStatus}
    for status, count in db.execute(select(Campaign.status, func.count()).group_by(Campaign.status)):
        counts[CampaignStatus(status).value] = count
    return counts
