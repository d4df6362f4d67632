"""
Campaign model - bulk email campaigns and their lifecycle status.
"""
from datetime import datetime
from typing import Optional
from uuid import uuid4, UUID
import enum

from sqlalchemy import String, Text, Integer, DateTime, Uuid, CheckConstraint, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from mailroom.lib.clock import utcnow
from mailroom.lib.db import Base, JSONType


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class CampaignType(str, enum.Enum):
    """Campaign type; decides which recipient builder strategy applies."""
    PREORDER_CONVERSION = "preorder-conversion"
    LIFECYCLE = "lifecycle"
    PROMOTIONAL = "promotional"


class CampaignStatus(str, enum.Enum):
    """Campaign lifecycle status."""
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    CampaignStatus.COMPLETED,
    CampaignStatus.FAILED,
    CampaignStatus.CANCELLED,
})


class Campaign(Base):
    """
    Campaign entity - one bulk send with its own recipient set and content.
    """
    __tablename__ = "email_campaigns"
    __table_args__ = (
        CheckConstraint(
            "template_id IS NULL OR html_content IS NULL",
            name="email_campaigns_content_check",
        ),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str] = mapped_column(String(998), nullable=False)

    campaign_type: Mapped[CampaignType] = mapped_column(
        SQLEnum(CampaignType, name="email_campaign_type", values_callable=_enum_values),
        nullable=False,
        index=True,
    )
    status: Mapped[CampaignStatus] = mapped_column(
        SQLEnum(CampaignStatus, name="email_campaign_status", values_callable=_enum_values),
        nullable=False,
        default=CampaignStatus.DRAFT,
        index=True,
    )

    # Content: provider template or inline HTML, never both
    template_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    html_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    params: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Global merge parameters passed to every recipient",
    )

    target_filter: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Audience filter, shape depends on campaign_type",
    )

    # Scheduling
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Counters
    total_recipients: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Audit
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    updated_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    @property
    def has_content(self) -> bool:
        return self.template_id is not None or bool(self.html_content)

    def __repr__(self) -> str:
        return f"<Campaign(id={self.id}, type={self.campaign_type}, status={self.status})>"
