"""
Daily email housekeeping.

Runs once a day (03:00 UTC by default), through ``/cron/email/cleanup`` or
the in-process scheduler:
1. Delete draft campaigns with no recipients that are older than the draft
   retention period, with their history
2. Mark pending preorder conversion tokens whose expiry has passed as expired

Monthly usage needs no reset: counters live in one row per calendar month.
The ``email-cleanup`` lease keeps overlapping runs apart.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from mailroom.lib.clock import utcnow
from mailroom.lib.config_flags import get_engine_config
from mailroom.lib.db import get_db_context
from mailroom.lib.logging import get_logger, set_correlation_id
from mailroom.lib.settings import settings
from mailroom.models.ab_variants import ABVariant
from mailroom.models.campaign_history import CampaignHistory
from mailroom.models.campaigns import Campaign, CampaignStatus
from mailroom.models.jobs import JobStatus
from mailroom.models.preorders import ConversionStatus, Preorder
from mailroom.models.recipients import CampaignRecipient
from mailroom.services import lease_service


logger = get_logger(__name__)

CLEANUP_LEASE = "email-cleanup"


def _delete_stale_drafts(db: Session, cutoff: datetime) -> int:
    stale_ids = list(db.scalars(
        select(Campaign.id).where(
            Campaign.status == CampaignStatus.DRAFT,
            Campaign.total_recipients == 0,
            Campaign.created_at < cutoff,
        )
    ))
    if not stale_ids:
        return 0

    for model in (CampaignRecipient, ABVariant, CampaignHistory):
        db.execute(
            delete(model)
            .where(model.campaign_id.in_(stale_ids))
            .execution_options(synchronize_session=False)
        )
    db.execute(
        delete(Campaign)
        .where(Campaign.id.in_(stale_ids), Campaign.status == CampaignStatus.DRAFT)
        .execution_options(synchronize_session=False)
    )
    return len(stale_ids)


def _expire_conversion_tokens(db: Session, now: datetime) -> int:
    result = db.execute(
        update(Preorder)
        .where(
            Preorder.conversion_status == ConversionStatus.PENDING,
            Preorder.conversion_token_expires_at < now,
        )
        .values(conversion_status=ConversionStatus.EXPIRED)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def run_email_cleanup(
    db: Session,
    now: Optional[datetime] = None,
    retention_days: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Run one cleanup pass.

    Returns:
        {"skipped", "drafts_deleted", "tokens_expired", "timestamp"}
    """
    now = now or utcnow()
    retention_days = retention_days if retention_days is not None else settings.draft_retention_days
    summary: Dict[str, Any] = {"skipped": False, "drafts_deleted": 0, "tokens_expired": 0}

    holder = lease_service.new_holder_id()
    set_correlation_id(f"email-cleanup-{holder[:12]}")
    if not lease_service.acquire_lease(db, CLEANUP_LEASE, holder, get_engine_config().lease_ttl_seconds):
        summary["skipped"] = True
        summary["timestamp"] = now.isoformat()
        return summary

    lease_status = JobStatus.DONE
    try:
        summary["drafts_deleted"] = _delete_stale_drafts(db, now - timedelta(days=retention_days))
        summary["tokens_expired"] = _expire_conversion_tokens(db, now)
        db.commit()
    except Exception:
        lease_status = JobStatus.FAILED
        db.rollback()
        logger.exception("Email cleanup failed")
        raise
    finally:
        lease_service.release_lease(db, CLEANUP_LEASE, holder, status=lease_status)

    summary["timestamp"] = now.isoformat()
    logger.info(
        f"Email cleanup complete: {summary['drafts_deleted']} drafts deleted, "
        f"{summary['tokens_expired']} conversion tokens expired",
        extra={"summary": summary},
    )
    return summary


def run_email_cleanup_sync() -> Dict[str, Any]:
    with get_db_context() as db:
        return run_email_cleanup(db)
