"""
Campaign history (audit trail) helpers.

Rows are only ever inserted. Callers own the transaction: ``record_action``
adds the row to the session and the caller commits it together with the change
it describes.
"""
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from mailroom.models.campaign_history import CampaignHistory, CampaignAction


def record_action(
    db: Session,
    campaign_id: UUID,
    action: CampaignAction,
    changed_by: str,
    notes: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> CampaignHistory:
    entry = CampaignHistory(
        campaign_id=campaign_id,
        action=action,
        changed_by=changed_by,
        notes=notes,
        meta=metadata or {},
    )
    db.add(entry)
    return entry


def list_history(
    db: Session,
    campaign_id: UUID,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[CampaignHistory], int]:
    """Newest first."""
    total = db.scalar(
        select(func.count()).select_from(CampaignHistory).where(CampaignHistory.campaign_id == campaign_id)
    ) or 0
    stmt = (
        select(CampaignHistory)
        .where(CampaignHistory.campaign_id == campaign_id)
        .order_by(CampaignHistory.created_at.desc(), CampaignHistory.id)
        .limit(limit)
        .offset(offset)
    )
    return list(db.scalars(stmt)), total


def count_actions(db: Session, campaign_id: UUID, action: Optional[CampaignAction] = None) -> int:
    stmt = select(func.count()).select_from(CampaignHistory).where(CampaignHistory.campaign_id == campaign_id)
    if action is not None:
        stmt = stmt.where(CampaignHistory.action == action)
    return db.scalar(stmt) or 0
