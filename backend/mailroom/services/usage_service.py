"""
Monthly email usage against the provider plan limit.
"""
from datetime import date
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailroom.lib.clock import utcnow
from mailroom.lib.logging import get_logger
from mailroom.lib.settings import settings
from mailroom.models.email_usage import EmailMonthlyUsage


logger = get_logger(__name__)

USAGE_KINDS = ("campaign", "transactional")


def month_start(today: Optional[date] = None) -> date:
    today = today or utcnow().date()
    return today.replace(day=1)


def _ensure_row(db: Session, month: date) -> None:
    if db.get(EmailMonthlyUsage, month) is not None:
        return
    db.add(EmailMonthlyUsage(month=month, monthly_limit=settings.monthly_email_limit))
    try:
        db.commit()
    except IntegrityError:
        # Created concurrently; the row now exists
        db.rollback()


def increment_usage(db: Session, kind: str, amount: int, today: Optional[date] = None) -> None:
    """Add ``amount`` sends of ``kind`` to the current month."""
    if amount <= 0:
        return
    if kind not in USAGE_KINDS:
        raise ValueError(f"Unknown usage kind: {kind}")

    month = month_start(today)
    _ensure_row(db, month)
    column = EmailMonthlyUsage.campaign_sent if kind == "campaign" else EmailMonthlyUsage.transactional_sent
    db.execute(
        update(EmailMonthlyUsage)
        .where(EmailMonthlyUsage.month == month)
        .values({column: column + amount, EmailMonthlyUsage.updated_at: utcnow()})
        .execution_options(synchronize_session=False)
    )
    db.commit()


def get_usage(db: Session, today: Optional[date] = None) -> dict:
    month = month_start(today)
    row = db.get(EmailMonthlyUsage, month, populate_existing=True)
    campaign_sent = row.campaign_sent if row else 0
    transactional_sent = row.transactional_sent if row else 0
    limit = row.monthly_limit if row else settings.monthly_email_limit
    total = campaign_sent + transactional_sent
    return {
        "month": month.isoformat(),
        "campaign_sent": campaign_sent,
        "transactional_sent": transactional_sent,
        "total_sent": total,
        "monthly_limit": limit,
        "remaining": max(limit - total, 0),
        "percent_used": round(total / limit * 100, 1) if limit else 0.0,
    }
