"""
Job lease model - persisted run locks for the cron driver and the chunk processor.
"""
from datetime import datetime
from typing import Optional
import enum

from sqlalchemy import String, Integer, DateTime, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from mailroom.lib.clock import utcnow
from mailroom.lib.db import Base
from mailroom.models.campaigns import _enum_values


class JobStatus(str, enum.Enum):
    """Outcome of the last run that held the lease."""
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class JobLease(Base):
    """
    Job lease - one row per lock name.

    A lease is held while ``locked_until`` lies in the future; an expired lease
    can be taken over by any invocation, so a crashed run never blocks forever.
    """
    __tablename__ = "job_leases"

    name: Mapped[str] = mapped_column(
        String(128),
        primary_key=True,
        comment="email-cron or campaign:<id>",
    )
    holder: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    locked_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
    )
    acquired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    run_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_status: Mapped[JobStatus] = mapped_column(
        SQLEnum(JobStatus, name="job_status", values_callable=_enum_values),
        nullable=False,
        default=JobStatus.PENDING,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        return f"<JobLease(name={self.name}, holder={self.holder}, until={self.locked_until})>"
