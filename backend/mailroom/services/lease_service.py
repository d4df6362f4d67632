"""
Persisted run leases.

A lease row per lock name replaces process-memory "already running" flags:
invocations of the cron endpoint do not share memory and may overlap. A lease
is held while ``locked_until`` is in the future, so a crashed holder blocks
others for at most one TTL.

Usage:
    holder = new_holder_id()
    if not acquire_lease(db, CRON_LEASE, holder, ttl_seconds=120):
        return  # someone else is running
    try:
        ...
    finally:
        release_lease(db, CRON_LEASE, holder)
"""
from datetime import timedelta
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailroom.lib.clock import utcnow
from mailroom.lib.logging import get_logger
from mailroom.models.jobs import JobLease, JobStatus


logger = get_logger(__name__)

CRON_LEASE = "email-cron"


def campaign_lease_name(campaign_id: UUID) -> str:
    return f"campaign:{campaign_id}"


def new_holder_id() -> str:
    return uuid4().hex


def acquire_lease(db: Session, name: str, holder: str, ttl_seconds: int) -> bool:
    """
    Try to take the lease ``name`` for ``ttl_seconds``.

    Returns:
        True if the lease is now held by ``holder``
    """
    now = utcnow()
    locked_until = now + timedelta(seconds=ttl_seconds)

    result = db.execute(
        update(JobLease)
        .where(
            JobLease.name == name,
            or_(JobLease.locked_until.is_(None), JobLease.locked_until <= now),
        )
        .values(
            holder=holder,
            locked_until=locked_until,
            acquired_at=now,
            run_count=JobLease.run_count + 1,
            last_status=JobStatus.PROCESSING,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        db.commit()
        logger.debug(f"Lease {name} acquired", extra={"lease": name, "holder": holder})
        return True

    if db.get(JobLease, name) is not None:
        db.rollback()
        logger.info(f"Lease {name} is held by another invocation, skipping", extra={"lease": name})
        return False

    db.add(JobLease(
        name=name,
        holder=holder,
        locked_until=locked_until,
        acquired_at=now,
        run_count=1,
        last_status=JobStatus.PROCESSING,
    ))
    try:
        db.commit()
    except IntegrityError:
        # Another invocation created the row first and holds it
        db.rollback()
        logger.info(f"Lease {name} was taken concurrently, skipping", extra={"lease": name})
        return False

    logger.debug(f"Lease {name} created", extra={"lease": name, "holder": holder})
    return True


def renew_lease(db: Session, name: str, holder: str, ttl_seconds: int) -> bool:
    """
    Push ``locked_until`` of a held lease to ``ttl_seconds`` from now.

    Long runs renew before each unit of work, so the lease only lapses when
    the holder stops making progress.

    A lapsed lease nobody has taken over yet is still renewable.

    Returns:
        False when ``holder`` no longer owns the lease
    """
    now = utcnow()
    result = db.execute(
        update(JobLease)
        .where(JobLease.name == name, JobLease.holder == holder)
        .values(locked_until=now + timedelta(seconds=ttl_seconds), updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    renewed = result.rowcount == 1
    if not renewed:
        logger.warning(f"Lease {name} lost by {holder}", extra={"lease": name, "holder": holder})
    return renewed


def release_lease(
    db: Session,
    name: str,
    holder: str,
    status: JobStatus = JobStatus.DONE,
) -> bool:
    """
    Release the lease if ``holder`` still owns it.

    Returns:
        False when the lease had expired and was taken over by someone else
    """
    result = db.execute(
        update(JobLease)
        .where(JobLease.name == name, JobLease.holder == holder)
        .values(holder=None, locked_until=None, last_status=status, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    released = result.rowcount == 1
    if not released:
        logger.warning(f"Lease {name} was no longer held by {holder}", extra={"lease": name})
    return released


def get_lease(db: Session, name: str) -> Optional[JobLease]:
    return db.get(JobLease, name, populate_existing=True)
