"""
A/B variant model - per-campaign content overrides.
"""
from datetime import datetime
from typing import Optional
from uuid import uuid4, UUID

from sqlalchemy import String, Text, Integer, DateTime, Uuid, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from mailroom.lib.clock import utcnow
from mailroom.lib.db import Base, JSONType


class ABVariant(Base):
    """
    A/B variant - overrides subject, content or params for its share of recipients.
    """
    __tablename__ = "email_ab_variants"
    __table_args__ = (
        UniqueConstraint("campaign_id", "variant_label", name="email_ab_variants_unique_label"),
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
    variant_label: Mapped[str] = mapped_column(String(32), nullable=False)

    # Content overrides; NULL falls back to the campaign
    subject: Mapped[Optional[str]] = mapped_column(String(998), nullable=True)
    template_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    html_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    params: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    recipient_percentage: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Share of recipients; NULL for an even split",
    )
    assigned_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<ABVariant(campaign={self.campaign_id}, label={self.variant_label})>"
