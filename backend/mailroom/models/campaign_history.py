"""
Campaign history model - append-only audit trail of campaign actions.
"""
from datetime import datetime
from typing import Optional
from uuid import uuid4, UUID
import enum

from sqlalchemy import String, Text, DateTime, Uuid, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from mailroom.lib.clock import utcnow
from mailroom.lib.db import Base, JSONType
from mailroom.models.campaigns import _enum_values


SYSTEM_ACTOR = "system-cron"


class CampaignAction(str, enum.Enum):
    """Audited campaign action."""
    CREATED = "created"
    UPDATED = "updated"
    SCHEDULED = "scheduled"
    STARTED = "started"
    PAUSED = "paused"
    RESUMED = "resumed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED_DETECTED = "stalled_detected"
    TEST_SENT = "test_sent"
    AB_TEST_CREATED = "ab_test_created"
    AB_TEST_DELETED = "ab_test_deleted"
    RECIPIENTS_REBUILT = "recipients_rebuilt"
    DUPLICATED = "duplicated"


class CampaignHistory(Base):
    """
    Campaign history entry - written once, never updated.
    """
    __tablename__ = "email_campaign_history"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    campaign_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("email_campaigns.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action: Mapped[CampaignAction] = mapped_column(
        SQLEnum(CampaignAction, name="email_campaign_action", values_callable=_enum_values),
        nullable=False,
        index=True,
    )
    changed_by: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Staff user id or the reserved system identity",
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<CampaignHistory(campaign={self.campaign_id}, action={self.action}, by={self.changed_by})>"
