"""
Recipient model - one row per campaign x contact with its delivery status.
"""
from datetime import datetime
from typing import Optional
from uuid import uuid4, UUID
import enum

from sqlalchemy import (
    String, Text, Integer, DateTime, Uuid, ForeignKey, UniqueConstraint, Index,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column

from mailroom.lib.clock import utcnow
from mailroom.lib.db import Base, JSONType
from mailroom.models.campaigns import _enum_values


class RecipientStatus(str, enum.Enum):
    """Per-recipient delivery status. Everything except PENDING is terminal for the engine."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    BOUNCED = "bounced"
    UNSUBSCRIBED_EXCLUDED = "unsubscribed-excluded"


class CampaignRecipient(Base):
    """
    Campaign recipient - snapshotted at build time.
    """
    __tablename__ = "email_campaign_recipients"
    __table_args__ = (
        UniqueConstraint("campaign_id", "email", name="email_campaign_recipients_unique_email"),
        Index("idx_ecr_campaign_status_seq", "campaign_id", "status", "seq"),
    )

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
    # Insertion order within the campaign; chunks drain in ascending seq
    seq: Mapped[int] = mapped_column(Integer, nullable=False)

    email: Mapped[str] = mapped_column(String(320), nullable=False)
    full_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    params: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Per-recipient merge parameters",
    )

    status: Mapped[RecipientStatus] = mapped_column(
        SQLEnum(RecipientStatus, name="email_recipient_status", values_callable=_enum_values),
        nullable=False,
        default=RecipientStatus.PENDING,
    )
    variant_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("email_ab_variants.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    clicked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

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

    def __repr__(self) -> str:
        return f"<CampaignRecipient(campaign={self.campaign_id}, email={self.email}, status={self.status})>"
