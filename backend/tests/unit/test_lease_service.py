"""
Unit tests for persisted run leases.
"""
import pytest
from datetime import timedelta
from sqlalchemy import update

from mailroom.lib.clock import as_utc, utcnow
from mailroom.models.jobs import JobLease, JobStatus
from mailroom.services import lease_service


@pytest.mark.unit
def test_first_acquire_creates_lease(db):
    assert lease_service.acquire_lease(db, "email-cron", "holder-a", 120) is True

    lease = lease_service.get_lease(db, "email-cron")
    assert lease.holder == "holder-a"
    assert lease.run_count == 1
    assert lease.last_status == JobStatus.PROCESSING
    assert lease.locked_until is not None


@pytest.mark.unit
def test_held_lease_cannot_be_taken(db):
    assert lease_service.acquire_lease(db, "email-cron", "holder-a", 120)

    assert lease_service.acquire_lease(db, "email-cron", "holder-b", 120) is False
    assert lease_service.get_lease(db, "email-cron").holder == "holder-a"


@pytest.mark.unit
def test_expired_lease_is_taken_over(db):
    assert lease_service.acquire_lease(db, "email-cron", "crashed", 120)
    db.execute(
        update(JobLease)
        .where(JobLease.name == "email-cron")
        .values(locked_until=utcnow() - timedelta(seconds=1))
    )
    db.commit()

    assert lease_service.acquire_lease(db, "email-cron", "holder-b", 120) is True

    lease = lease_service.get_lease(db, "email-cron")
    assert lease.holder == "holder-b"
    assert lease.run_count == 2


@pytest.mark.unit
def test_release_by_holder(db):
    lease_service.acquire_lease(db, "email-cron", "holder-a", 120)

    assert lease_service.release_lease(db, "email-cron", "holder-a", status=JobStatus.FAILED) is True

    lease = lease_service.get_lease(db, "email-cron")
    assert lease.holder is None
    assert lease.locked_until is None
    assert lease.last_status == JobStatus.FAILED
    assert lease_service.acquire_lease(db, "email-cron", "holder-b", 120) is True


@pytest.mark.unit
def test_release_by_stale_holder_is_a_no_op(db):
    lease_service.acquire_lease(db, "email-cron", "holder-a", 120)

    assert lease_service.release_lease(db, "email-cron", "holder-b") is False
    assert lease_service.get_lease(db, "email-cron").holder == "holder-a"


@pytest.mark.unit
def test_leases_are_independent_per_name(db):
    first = lease_service.campaign_lease_name("11111111-1111-1111-1111-111111111111")
    second = lease_service.campaign_lease_name("22222222-2222-2222-2222-222222222222")

    assert lease_service.acquire_lease(db, first, "holder-a", 120)
    assert lease_service.acquire_lease(db, second, "holder-b", 120)
    assert first == "campaign:11111111-1111-1111-1111-111111111111"


@pytest.mark.unit
def test_renew_pushes_expiry_forward(db):
    lease_service.acquire_lease(db, "email-cron", "holder-a", 120)
    first_expiry = as_utc(lease_service.get_lease(db, "email-cron").locked_until)

    assert lease_service.renew_lease(db, "email-cron", "holder-a", 600) is True

    lease = lease_service.get_lease(db, "email-cron")
    assert as_utc(lease.locked_until) > first_expiry + timedelta(seconds=400)
    assert lease.holder == "holder-a"
    assert lease.run_count == 1


@pytest.mark.unit
def test_lapsed_lease_is_renewable_until_taken_over(db):
    lease_service.acquire_lease(db, "email-cron", "holder-a", 120)
    db.execute(
        update(JobLease)
        .where(JobLease.name == "email-cron")
        .values(locked_until=utcnow() - timedelta(seconds=1))
    )
    db.commit()

    assert lease_service.renew_lease(db, "email-cron", "holder-a", 120) is True
    assert lease_service.acquire_lease(db, "email-cron", "holder-b", 120) is False


@pytest.mark.unit
def test_renew_by_stale_holder_fails(db):
    lease_service.acquire_lease(db, "email-cron", "holder-a", 120)

    assert lease_service.renew_lease(db, "email-cron", "holder-b", 120) is False
    assert lease_service.renew_lease(db, "unknown-lease", "holder-a", 120) is False
    assert lease_service.get_lease(db, "email-cron").holder == "holder-a"
