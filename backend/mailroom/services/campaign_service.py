"""
Campaign store and draft editing.

Creating a campaign or changing a draft's filter rebuilds its recipient set
inside the same transaction, so ``total_recipients`` always equals the number
of recipient rows and a failed rebuild leaves the previous set untouched.
"""
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, delete, func, or_
from sqlalchemy.orm import Session

from mailroom.lib.clock import utcnow
from mailroom.lib.config_flags import EngineConfig, get_engine_config
from mailroom.lib.errors import BadRequestException, ConflictException, NotFoundException
from mailroom.lib.logging import get_logger
from mailroom.models.ab_variants import ABVariant
from mailroom.models.campaign_history import CampaignAction, CampaignHistory
from mailroom.models.campaigns import Campaign, CampaignStatus, CampaignType
from mailroom.models.recipients import CampaignRecipient
from mailroom.schemas.filters import parse_target_filter
from mailroom.services import history_service, recipient_service
from mailroom.services.ab_testing import ABTestService
from mailroom.services.campaign_engine import compose_message
from mailroom.services.email_transport import EmailTransport, SendResult, get_email_transport
from mailroom.services.recipient_builder import RecipientBuilder


logger = get_logger(__name__)

EDITABLE_FIELDS = ("name", "subject", "template_id", "html_content", "params", "target_filter")


def _check_content(template_id: Optional[int], html_content: Optional[str]) -> None:
    if template_id is not None and html_content:
        raise BadRequestException(
            "Provide either template_id or html_content, not both",
            code="CONFLICTING_CONTENT",
        )


class CampaignService:
    """Campaign CRUD, recipient rebuilds and test sends."""

    def __init__(self, db: Session, config: Optional[EngineConfig] = None):
        self.db = db
        self.config = config or get_engine_config()
        self.builder = RecipientBuilder(db, self.config)
        self.ab_tests = ABTestService(db, self.config)

    def get_campaign(self, campaign_id: UUID) -> Campaign:
        campaign = self.db.get(Campaign, campaign_id, populate_existing=True)
        if campaign is None:
            raise NotFoundException("Campaign", str(campaign_id))
        return campaign

    def _require_draft(self, campaign: Campaign) -> None:
        if campaign.status != CampaignStatus.DRAFT:
            raise ConflictException(
                "Only draft campaigns can be changed",
                details={"current": campaign.status.value},
                code="CAMPAIGN_NOT_DRAFT",
            )

    def _rebuild_recipients(self, campaign: Campaign) -> int:
        """Clear and rebuild recipients, then re-run A/B assignment. Does not commit."""
        recipient_service.clear_recipients(self.db, campaign.id)
        count = self.builder.build(campaign.id, campaign.campaign_type, campaign.target_filter)
        campaign.total_recipients = count
        self.ab_tests.assign_recipients(campaign.id)
        return count

    def create_campaign(
        self,
        actor: str,
        name: str,
        subject: str,
        campaign_type: CampaignType,
        target_filter: Optional[dict[str, Any]] = None,
        template_id: Optional[int] = None,
        html_content: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Campaign:
        """Create a draft and build its recipients."""
        _check_content(template_id, html_content)
        campaign_type = CampaignType(campaign_type)
        parsed = parse_target_filter(campaign_type, target_filter)

        campaign = Campaign(
            name=name,
            subject=subject,
            campaign_type=campaign_type,
            status=CampaignStatus.DRAFT,
            target_filter=parsed.to_storage(),
            template_id=template_id,
            html_content=html_content,
            params=params or {},
            created_by=actor,
            updated_by=actor,
        )
        try:
            self.db.add(campaign)
            self.db.flush()
            count = self._rebuild_recipients(campaign)
            history_service.record_action(
                self.db,
                campaign.id,
                CampaignAction.CREATED,
                actor,
                metadata={"campaign_type": campaign_type.value, "total_recipients": count},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Created campaign {campaign.id} with {count} recipients",
            extra={"campaign_id": str(campaign.id), "campaign_type": campaign_type.value, "actor": actor},
        )
        return self.get_campaign(campaign.id)

    def update_draft(self, campaign_id: UUID, changes: dict[str, Any], actor: str) -> Campaign:
        """
        Apply field changes to a draft. A changed ``target_filter`` rebuilds the
        recipient set; all of it commits at once or not at all.
        """
        campaign = self.get_campaign(campaign_id)
        self._require_draft(campaign)

        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise BadRequestException(
                "Fields cannot be changed",
                details={"fields": sorted(unknown)},
                code="NOT_EDITABLE",
            )

        template_id = changes.get("template_id", campaign.template_id)
        html_content = changes.get("html_content", campaign.html_content)
        _check_content(template_id, html_content)

        rebuild = "target_filter" in changes
        if rebuild:
            changes = {
                **changes,
                "target_filter": parse_target_filter(campaign.campaign_type, changes["target_filter"]).to_storage(),
            }

        try:
            for key, value in changes.items():
                setattr(campaign, key, value)
            campaign.updated_by = actor
            campaign.updated_at = utcnow()
            self.db.flush()

            history_service.record_action(
                self.db, campaign.id, CampaignAction.UPDATED, actor,
                metadata={"fields": sorted(changes)},
            )
            if rebuild:
                previous = campaign.total_recipients
                count = self._rebuild_recipients(campaign)
                history_service.record_action(
                    self.db, campaign.id, CampaignAction.RECIPIENTS_REBUILT, actor,
                    metadata={"previous_total": previous, "total_recipients": count},
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Updated draft campaign {campaign_id}",
            extra={"campaign_id": str(campaign_id), "fields": sorted(changes), "rebuilt": rebuild},
        )
        return self.get_campaign(campaign_id)

    def duplicate_campaign(self, campaign_id: UUID, actor: str) -> Campaign:
        """
        Copy any campaign into a new draft with the same content and filter.

        Recipients are rebuilt from the filter as of now; A/B variants are not
        copied and have to be set up again.
        """
        source = self.get_campaign(campaign_id)
        copy = Campaign(
            name=f"[Copy] {source.name}",
            subject=source.subject,
            campaign_type=source.campaign_type,
            status=CampaignStatus.DRAFT,
            target_filter=dict(source.target_filter or {}),
            template_id=source.template_id,
            html_content=source.html_content,
            params=dict(source.params or {}),
            created_by=actor,
            updated_by=actor,
        )
        try:
            self.db.add(copy)
            self.db.flush()
            count = self._rebuild_recipients(copy)
            history_service.record_action(
                self.db,
                copy.id,
                CampaignAction.DUPLICATED,
                actor,
                notes=f"Duplicated from {source.name}",
                metadata={
                    "original_campaign_id": str(source.id),
                    "original_name": source.name,
                    "total_recipients": count,
                },
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Duplicated campaign {source.id} as {copy.id} with {count} recipients",
            extra={"campaign_id": str(copy.id), "original_campaign_id": str(source.id), "actor": actor},
        )
        return self.get_campaign(copy.id)

    def delete_draft(self, campaign_id: UUID, actor: str) -> None:
        """Delete a draft together with its recipients, variants and history."""
        campaign = self.get_campaign(campaign_id)
        self._require_draft(campaign)

        try:
            for model in (CampaignRecipient, ABVariant, CampaignHistory):
                self.db.execute(
                    delete(model)
                    .where(model.campaign_id == campaign_id)
                    .execution_options(synchronize_session=False)
                )
            self.db.delete(campaign)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"Deleted draft campaign {campaign_id}", extra={"campaign_id": str(campaign_id), "actor": actor})

    def list_campaigns(
        self,
        status: Optional[CampaignStatus] = None,
        campaign_type: Optional[CampaignType] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Campaign], int]:
        conditions = []
        if status is not None:
            conditions.append(Campaign.status == status)
        if campaign_type is not None:
            conditions.append(Campaign.campaign_type == campaign_type)
        if search:
            pattern = f"%{search.strip()}%"
            conditions.append(or_(Campaign.name.ilike(pattern), Campaign.subject.ilike(pattern)))

        total = self.db.scalar(select(func.count()).select_from(Campaign).where(*conditions)) or 0
        stmt = (
            select(Campaign)
            .where(*conditions)
            .order_by(Campaign.created_at.desc(), Campaign.id)
            .limit(limit)
            .offset(offset)
        )
        return list(self.db.scalars(stmt)), total

    def get_scheduled_due(self, now: Optional[datetime] = None) -> list[Campaign]:
        """Scheduled campaigns whose start time has passed, earliest first."""
        now = now or utcnow()
        stmt = (
            select(Campaign)
            .where(Campaign.status == CampaignStatus.SCHEDULED, Campaign.scheduled_at <= now)
            .order_by(Campaign.scheduled_at, Campaign.id)
            .execution_options(populate_existing=True)
        )
        return list(self.db.scalars(stmt))

    def get_sending(self) -> list[Campaign]:
        stmt = (
            select(Campaign)
            .where(Campaign.status == CampaignStatus.SENDING)
            .order_by(Campaign.started_at, Campaign.id)
            .execution_options(populate_existing=True)
        )
        return list(self.db.scalars(stmt))

    async def send_test(
        self,
        campaign_id: UUID,
        to_email: str,
        actor: str,
        to_name: Optional[str] = None,
        variant_label: Optional[str] = None,
        transport: Optional[EmailTransport] = None,
    ) -> SendResult:
        """
        Send one ``[TEST]`` message with the campaign's content to ``to_email``.
        Independent of the recipient set and of the campaign status.
        """
        campaign = self.get_campaign(campaign_id)

        variant = None
        if variant_label:
            variant = self.db.scalar(
                select(ABVariant).where(ABVariant.campaign_id == campaign_id, ABVariant.variant_label == variant_label)
            )
            if variant is None:
                raise NotFoundException("A/B variant", variant_label)

        message = compose_message(
            campaign,
            to_email.strip().lower(),
            to_name,
            variant=variant,
            recipient_params={"firstName": (to_name or "").split(" ")[0] or None},
            subject_prefix="[TEST] ",
        )
        if message.template_id is None and not message.html_content:
            raise BadRequestException(
                "Campaign has neither a template nor HTML content",
                code="MISSING_CONTENT",
            )

        transport = transport or get_email_transport()
        result = await transport.send(message)

        history_service.record_action(
            self.db,
            campaign_id,
            CampaignAction.TEST_SENT,
            actor,
            metadata={
                "to": message.to_email,
                "variant": variant_label,
                "success": result.success,
                "message_id": result.message_id,
                "error": result.error,
            },
        )
        self.db.commit()
        logger.info(
            f"Test email for campaign {campaign_id} to {message.to_email}: success={result.success}",
            extra={"campaign_id": str(campaign_id), "actor": actor},
        )
        return result
