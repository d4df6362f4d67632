"""
Unsubscribe registry.

A single global list covering every campaign type. Transactional email is not
affected. Staff can re-subscribe an address by removing its entry.
"""
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import delete, select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailroom.lib.clock import utcnow
from mailroom.lib.logging import get_logger
from mailroom.models.unsubscribes import EmailUnsubscribe


logger = get_logger(__name__)

# Keeps IN (...) lists well under driver parameter limits
_LOOKUP_BATCH = 500


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_unsubscribed(db: Session, email: str) -> bool:
    stmt = select(EmailUnsubscribe.id).where(EmailUnsubscribe.email == normalize_email(email)).limit(1)
    return db.scalar(stmt) is not None


def unsubscribed_among(db: Session, emails: Iterable[str]) -> set[str]:
    """Return the subset of ``emails`` (already normalised) present in the registry."""
    candidates = list(emails)
    found: set[str] = set()
    for i in range(0, len(candidates), _LOOKUP_BATCH):
        batch = candidates[i:i + _LOOKUP_BATCH]
        found.update(db.scalars(select(EmailUnsubscribe.email).where(EmailUnsubscribe.email.in_(batch))))
    return found


def record_unsubscribe(
    db: Session,
    email: str,
    source: str,
    campaign_id: Optional[UUID] = None,
    reason: Optional[str] = None,
) -> EmailUnsubscribe:
    """
    Add ``email`` to the registry, or refresh the existing entry.

    Duplicate events (webhook retries, repeated clicks) are harmless.
    """
    normalized = normalize_email(email)

    for _attempt in range(2):
        entry = db.scalar(select(EmailUnsubscribe).where(EmailUnsubscribe.email == normalized))
        if entry is None:
            entry = EmailUnsubscribe(email=normalized)
            db.add(entry)
        entry.source = source
        entry.campaign_id = campaign_id
        entry.reason = reason
        entry.unsubscribed_at = utcnow()
        try:
            db.commit()
            break
        except IntegrityError:
            # Concurrent insert of the same address; retry as an update
            db.rollback()
    else:
        raise RuntimeError(f"Could not record unsubscribe for {normalized}")

    logger.info(
        "Recorded unsubscribe",
        extra={"email": normalized, "source": source, "campaign_id": str(campaign_id) if campaign_id else None},
    )
    return entry


def remove_unsubscribe(db: Session, email: str, actor: str) -> bool:
    """
    Re-subscribe ``email``. Recipients already marked unsubscribed-excluded
    stay that way; only future builds and sends see the change.

    Returns:
        False when the address was not in the registry
    """
    normalized = normalize_email(email)
    result = db.execute(
        delete(EmailUnsubscribe)
        .where(EmailUnsubscribe.email == normalized)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    removed = result.rowcount > 0
    if removed:
        logger.info("Removed unsubscribe", extra={"email": normalized, "actor": actor})
    return removed


def list_unsubscribes(
    db: Session,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[EmailUnsubscribe], int]:
    stmt = select(EmailUnsubscribe)
    count_stmt = select(func.count()).select_from(EmailUnsubscribe)
    if search:
        pattern = f"%{search.strip().lower()}%"
        stmt = stmt.where(EmailUnsubscribe.email.like(pattern))
        count_stmt = count_stmt.where(EmailUnsubscribe.email.like(pattern))

    total = db.scalar(count_stmt) or 0
    items = db.scalars(
        stmt.order_by(EmailUnsubscribe.unsubscribed_at.desc()).limit(limit).offset(offset)
    )
    return list(items), total
