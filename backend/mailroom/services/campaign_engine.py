"""
Campaign engine - resumable, chunked delivery of a sending campaign.

Each ``process_chunk`` call drains at most ``chunk_size`` pending recipients
in insertion order and returns. The cron driver calls it again on the next
tick until nothing is pending, at which point the campaign is completed.

Execution flow for one chunk:
1. Re-read the campaign status; anything but ``sending`` is a no-op. This is
   the only cancellation point: pause/cancel take effect between chunks, an
   in-flight send is never interrupted.
2. Take the ``campaign:<id>`` lease so overlapping invocations never work the
   same campaign at once. The lease is renewed before every recipient; if it
   was lost to another invocation the chunk stops there.
3. For each pending recipient, sequentially: re-check the unsubscribe
   registry, resolve the A/B variant, merge params (campaign < variant <
   recipient), send with a per-recipient timeout and record the outcome with a
   status-gated update committed on its own.
4. Add the chunk's outcomes to the campaign counters and monthly usage, also
   when a storage error ends the chunk early.
5. Complete the campaign once no recipient is pending.

Delivery errors are recorded per recipient and never abort the chunk.
Storage errors propagate to the caller; the lease is always released.
"""
import asyncio
from dataclasses import dataclass, asdict
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from mailroom.lib.clock import utcnow
from mailroom.lib.config_flags import EngineConfig, get_engine_config
from mailroom.lib.errors import InvalidTransitionException, NotFoundException
from mailroom.lib.logging import get_logger
from mailroom.lib.metrics import get_metrics_collector
from mailroom.models.ab_variants import ABVariant
from mailroom.models.campaign_history import SYSTEM_ACTOR
from mailroom.models.campaigns import Campaign, CampaignStatus
from mailroom.models.jobs import JobStatus
from mailroom.models.recipients import CampaignRecipient, RecipientStatus
from mailroom.services import lease_service, recipient_service, unsubscribe_service, usage_service
from mailroom.services.email_transport import EmailMessage, EmailTransport, SendResult, get_email_transport
from mailroom.services.lifecycle import CampaignLifecycle, has_usable_content


logger = get_logger(__name__)


@dataclass
class ChunkResult:
    processed: int
    remaining: int
    completed: bool
    sent: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def compose_message(
    campaign: Campaign,
    to_email: str,
    to_name: Optional[str] = None,
    variant: Optional[ABVariant] = None,
    recipient_params: Optional[dict[str, Any]] = None,
    subject_prefix: str = "",
) -> EmailMessage:
    """
    Resolve the content one recipient receives.

    Variant fields override the campaign's; params merge campaign < variant <
    recipient. A variant that brings its own template or HTML replaces both
    campaign content sources.
    """
    subject = (variant.subject if variant and variant.subject else None) or campaign.subject
    if variant and (variant.template_id is not None or variant.html_content):
        template_id, html_content = variant.template_id, variant.html_content
    else:
        template_id, html_content = campaign.template_id, campaign.html_content

    params: dict[str, Any] = {}
    params.update(campaign.params or {})
    if variant:
        params.update(variant.params or {})
    params.update(recipient_params or {})

    return EmailMessage(
        to_email=to_email,
        to_name=to_name,
        subject=f"{subject_prefix}{subject}",
        template_id=template_id,
        html_content=html_content if template_id is None else None,
        params=params,
        tags=["campaign", campaign.campaign_type.value],
    )


class CampaignEngine:
    """
    Chunk processor for campaigns in ``sending`` status.

    Dependencies are injected so tests can supply a fake transport and a small
    configuration.
    """

    def __init__(
        self,
        db: Session,
        transport: Optional[EmailTransport] = None,
        config: Optional[EngineConfig] = None,
        lifecycle: Optional[CampaignLifecycle] = None,
    ):
        self.db = db
        self.transport = transport or get_email_transport()
        self.config = config or get_engine_config()
        self.lifecycle = lifecycle or CampaignLifecycle(db)
        self.metrics = get_metrics_collector()

    def _load(self, campaign_id: UUID) -> Campaign:
        campaign = self.db.get(Campaign, campaign_id, populate_existing=True)
        if campaign is None:
            raise NotFoundException("Campaign", str(campaign_id))
        return campaign

    async def process_chunk(
        self,
        campaign_id: UUID,
        actor: str = SYSTEM_ACTOR,
        chunk_size: Optional[int] = None,
    ) -> ChunkResult:
        """
        Process up to ``chunk_size`` pending recipients of one campaign.

        Returns:
            ChunkResult(processed, remaining, completed)
        """
        chunk_size = chunk_size or self.config.chunk_size
        campaign = self._load(campaign_id)

        if campaign.status != CampaignStatus.SENDING:
            logger.info(
                f"Campaign {campaign_id} is {campaign.status.value}, nothing to process",
                extra={"campaign_id": str(campaign_id)},
            )
            return ChunkResult(
                processed=0,
                remaining=recipient_service.count_pending(self.db, campaign_id),
                completed=campaign.status == CampaignStatus.COMPLETED,
            )

        lease_name = lease_service.campaign_lease_name(campaign_id)
        holder = lease_service.new_holder_id()
        if not lease_service.acquire_lease(self.db, lease_name, holder, self.config.lease_ttl_seconds):
            self.metrics.increment_chunks("skipped")
            return ChunkResult(
                processed=0,
                remaining=recipient_service.count_pending(self.db, campaign_id),
                completed=False,
            )

        lease_status = JobStatus.DONE
        try:
            return await self._process_locked(campaign, actor, chunk_size, lease_name, holder)
        except Exception:
            lease_status = JobStatus.FAILED
            self.db.rollback()
            raise
        finally:
            lease_service.release_lease(self.db, lease_name, holder, status=lease_status)

    async def _process_locked(
        self,
        campaign: Campaign,
        actor: str,
        chunk_size: int,
        lease_name: str,
        holder: str,
    ) -> ChunkResult:
        campaign_id = campaign.id
        campaign_type = campaign.campaign_type.value

        if not has_usable_content(self.db, campaign):
            logger.error(
                f"Campaign {campaign_id} has no content, failing it",
                extra={"campaign_id": str(campaign_id)},
            )
            self.lifecycle.fail(campaign_id, actor, "Campaign has neither a template nor HTML content")
            return ChunkResult(
                processed=0,
                remaining=recipient_service.count_pending(self.db, campaign_id),
                completed=False,
            )

        variants = {
            v.id: v for v in self.db.scalars(select(ABVariant).where(ABVariant.campaign_id == campaign_id))
        }
        batch = recipient_service.next_pending_batch(self.db, campaign_id, chunk_size)

        sent = failed = skipped = 0
        try:
            for recipient in batch:
                # A send may take up to the recipient timeout, always shorter than the TTL
                if not lease_service.renew_lease(self.db, lease_name, holder, self.config.lease_ttl_seconds):
                    logger.warning(
                        f"Lost lease on campaign {campaign_id}, stopping chunk",
                        extra={"campaign_id": str(campaign_id)},
                    )
                    break
                outcome = await self._process_recipient(campaign, recipient, variants)
                if outcome == RecipientStatus.SENT:
                    sent += 1
                elif outcome == RecipientStatus.FAILED:
                    failed += 1
                elif outcome == RecipientStatus.UNSUBSCRIBED_EXCLUDED:
                    skipped += 1
        except Exception:
            self.db.rollback()
            raise
        finally:
            # Recipients already committed count even when the chunk dies part way
            self._record_outcomes(campaign_id, campaign_type, sent, failed, skipped)

        processed = sent + failed + skipped
        self.metrics.increment_chunks("processed")

        remaining = recipient_service.count_pending(self.db, campaign_id)
        logger.info(
            f"Chunk complete for campaign {campaign_id}: {sent} sent, {failed} failed, "
            f"{skipped} skipped, {remaining} remaining",
            extra={"campaign_id": str(campaign_id), "sent": sent, "failed": failed, "skipped": skipped},
        )

        completed = False
        if remaining == 0:
            try:
                self.lifecycle.complete(campaign_id, actor, metadata={"completed_via": "chunk"})
                completed = True
                self.metrics.increment_chunks("completed")
            except InvalidTransitionException as e:
                # Paused or cancelled while the last chunk was in flight
                logger.info(
                    f"Campaign {campaign_id} not completed: {e.message}",
                    extra={"campaign_id": str(campaign_id)},
                )

        return ChunkResult(
            processed=processed,
            remaining=remaining,
            completed=completed,
            sent=sent,
            failed=failed,
            skipped=skipped,
        )

    async def _process_recipient(
        self,
        campaign: Campaign,
        recipient: CampaignRecipient,
        variants: dict[UUID, ABVariant],
    ) -> Optional[RecipientStatus]:
        """
        Send to one recipient and record the outcome.

        Returns:
            The status written, or None when another invocation got there first
        """
        if unsubscribe_service.is_unsubscribed(self.db, recipient.email):
            if recipient_service.mark_unsubscribed(self.db, recipient.id):
                return RecipientStatus.UNSUBSCRIBED_EXCLUDED
            return None

        variant = variants.get(recipient.variant_id) if recipient.variant_id else None
        message = compose_message(
            campaign,
            recipient.email,
            recipient.full_name,
            variant=variant,
            recipient_params=recipient.params,
        )

        result = await self._send(message)

        if result.success:
            if not recipient_service.mark_sent(self.db, recipient.id, result.message_id):
                return None
            return RecipientStatus.SENT

        logger.warning(
            f"Send failed for {recipient.email}: {result.error}",
            extra={"campaign_id": str(campaign.id), "recipient_id": str(recipient.id)},
        )
        if recipient_service.mark_failed(self.db, recipient.id, result.error or "Unknown send error"):
            return RecipientStatus.FAILED
        return None

    async def _send(self, message: EmailMessage) -> SendResult:
        """Transport call bounded by the per-recipient timeout; never raises."""
        timeout = self.config.recipient_send_timeout_seconds
        try:
            return await asyncio.wait_for(self.transport.send(message), timeout=timeout)
        except asyncio.TimeoutError:
            return SendResult(success=False, error=f"Send timed out after {timeout:g}s")
        except Exception as e:
            logger.exception(f"Transport {self.transport.name} raised: {e}")
            return SendResult(success=False, error=f"{e.__class__.__name__}: {e}")

    def _record_outcomes(self, campaign_id: UUID, campaign_type: str, sent: int, failed: int, skipped: int) -> None:
        """Add one chunk's tallies to the campaign counters, monthly usage and metrics."""
        if not (sent or failed or skipped):
            return
        self.db.execute(
            update(Campaign)
            .where(Campaign.id == campaign_id)
            .values(
                sent_count=Campaign.sent_count + sent,
                failed_count=Campaign.failed_count + failed,
                skipped_count=Campaign.skipped_count + skipped,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        usage_service.increment_usage(self.db, "campaign", sent)
        self.metrics.increment_emails(campaign_type, "sent", sent)
        self.metrics.increment_emails(campaign_type, "failed", failed)
        self.metrics.increment_emails(campaign_type, "unsubscribed-excluded", skipped)
