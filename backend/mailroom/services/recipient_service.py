"""
Recipient store.

Every status write is a conditional UPDATE gated on the current status and is
committed on its own, so an interrupted chunk never leaves a recipient half
processed and a recipient in a terminal status is never touched again.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy import select, update, delete, func
from sqlalchemy.orm import Session

from mailroom.lib.clock import utcnow
from mailroom.lib.logging import get_logger
from mailroom.models.recipients import CampaignRecipient, RecipientStatus


logger = get_logger(__name__)

# Upper bound on rows per INSERT statement
_INSERT_BATCH = 500


@dataclass
class RecipientInput:
    """One contact produced by a recipient builder strategy."""
    email: str
    full_name: Optional[str] = None
    params: dict[str, Any] = field(default_factory=dict)


def add_recipients(db: Session, campaign_id: UUID, recipients: Iterable[RecipientInput]) -> int:
    """
    Insert recipients in the given order. Emails must already be normalised
    and unique; ``seq`` records insertion order. Does not commit.
    """
    rows = []
    for seq, recipient in enumerate(recipients, start=1):
        rows.append({
            "campaign_id": campaign_id,
            "seq": seq,
            "email": recipient.email,
            "full_name": recipient.full_name,
            "params": recipient.params,
        })
    for i in range(0, len(rows), _INSERT_BATCH):
        db.add_all(CampaignRecipient(**row) for row in rows[i:i + _INSERT_BATCH])
        db.flush()
    return len(rows)


def clear_recipients(db: Session, campaign_id: UUID) -> int:
    """Delete all recipients of a campaign. Does not commit."""
    result = db.execute(
        delete(CampaignRecipient)
        .where(CampaignRecipient.campaign_id == campaign_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def count_recipients(db: Session, campaign_id: UUID) -> int:
    return db.scalar(
        select(func.count()).select_from(CampaignRecipient).where(CampaignRecipient.campaign_id == campaign_id)
    ) or 0


def count_pending(db: Session, campaign_id: UUID) -> int:
    return db.scalar(
        select(func.count())
        .select_from(CampaignRecipient)
        .where(
            CampaignRecipient.campaign_id == campaign_id,
            CampaignRecipient.status == RecipientStatus.PENDING,
        )
    ) or 0


def get_recipient_stats(db: Session, campaign_id: UUID) -> dict[str, int]:
    """Recipient counts by status plus opened/clicked and the total."""
    stats = {status.value: 0 for status in RecipientStatus}
    rows = db.execute(
        select(CampaignRecipient.status, func.count())
        .where(CampaignRecipient.campaign_id == campaign_id)
        .group_by(CampaignRecipient.status)
    )
    for status, count in rows:
        stats[RecipientStatus(status).value] = count
    stats["total"] = sum(stats[status.value] for status in RecipientStatus)
    stats["opened"] = db.scalar(
        select(func.count())
        .select_from(CampaignRecipient)
        .where(CampaignRecipient.campaign_id == campaign_id, CampaignRecipient.opened_at.is_not(None))
    ) or 0
    stats["clicked"] = db.scalar(
        select(func.count())
        .select_from(CampaignRecipient)
        .where(CampaignRecipient.campaign_id == campaign_id, CampaignRecipient.clicked_at.is_not(None))
    ) or 0
    return stats


def next_pending_batch(db: Session, campaign_id: UUID, limit: int) -> list[CampaignRecipient]:
    """Up to ``limit`` pending recipients in insertion order."""
    stmt = (
        select(CampaignRecipient)
        .where(
            CampaignRecipient.campaign_id == campaign_id,
            CampaignRecipient.status == RecipientStatus.PENDING,
        )
        .order_by(CampaignRecipient.seq)
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return list(db.scalars(stmt))


def list_recipients(
    db: Session,
    campaign_id: UUID,
    status: Optional[RecipientStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[CampaignRecipient], int]:
    conditions = [CampaignRecipient.campaign_id == campaign_id]
    if status is not None:
        conditions.append(CampaignRecipient.status == status)
    total = db.scalar(select(func.count()).select_from(CampaignRecipient).where(*conditions)) or 0
    items = db.scalars(
        select(CampaignRecipient)
        .where(*conditions)
        .order_by(CampaignRecipient.seq)
        .limit(limit)
        .offset(offset)
        .execution_options(populate_existing=True)
    )
    return list(items), total


def _transition(
    db: Session,
    recipient_id: UUID,
    from_status: RecipientStatus,
    to_status: RecipientStatus,
    **values: Any,
) -> bool:
    now = utcnow()
    result = db.execute(
        update(CampaignRecipient)
        .where(CampaignRecipient.id == recipient_id, CampaignRecipient.status == from_status)
        .values(status=to_status, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    changed = result.rowcount == 1
    if not changed:
        logger.info(
            f"Recipient {recipient_id} was not {from_status.value}, {to_status.value} not applied",
            extra={"recipient_id": str(recipient_id)},
        )
    return changed


def mark_sent(db: Session, recipient_id: UUID, message_id: Optional[str]) -> bool:
    return _transition(
        db, recipient_id, RecipientStatus.PENDING, RecipientStatus.SENT,
        provider_message_id=message_id, sent_at=utcnow(), error=None,
    )


def mark_failed(db: Session, recipient_id: UUID, error: str) -> bool:
    return _transition(
        db, recipient_id, RecipientStatus.PENDING, RecipientStatus.FAILED,
        error=error[:2000],
    )


def mark_unsubscribed(db: Session, recipient_id: UUID, reason: str = "Unsubscribed from marketing email") -> bool:
    return _transition(
        db, recipient_id, RecipientStatus.PENDING, RecipientStatus.UNSUBSCRIBED_EXCLUDED,
        error=reason,
    )


def mark_bounced(db: Session, recipient_id: UUID, reason: Optional[str] = None) -> bool:
    """Delivery webhook: a sent message hard-bounced."""
    return _transition(
        db, recipient_id, RecipientStatus.SENT, RecipientStatus.BOUNCED,
        error=reason or "Hard bounce",
    )


def find_by_message_id(db: Session, message_id: str) -> Optional[CampaignRecipient]:
    return db.scalar(
        select(CampaignRecipient)
        .where(CampaignRecipient.provider_message_id == message_id)
        .execution_options(populate_existing=True)
    )


def mark_engagement(db: Session, recipient_id: UUID, event: str, at: Optional[datetime] = None) -> bool:
    """
    Record an open or click. Only the first occurrence is kept; a click implies an open.
    """
    at = at or utcnow()
    column = CampaignRecipient.opened_at if event == "opened" else CampaignRecipient.clicked_at
    values = {column: at, CampaignRecipient.updated_at: utcnow()}
    result = db.execute(
        update(CampaignRecipient)
        .where(CampaignRecipient.id == recipient_id, column.is_(None))
        .values(values)
        .execution_options(synchronize_session=False)
    )
    if event == "clicked":
        db.execute(
            update(CampaignRecipient)
            .where(CampaignRecipient.id == recipient_id, CampaignRecipient.opened_at.is_(None))
            .values(opened_at=at)
            .execution_options(synchronize_session=False)
        )
    db.commit()
    return result.rowcount == 1
