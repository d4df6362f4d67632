"""
Unsubscribe model - global marketing opt-out list.
"""
from datetime import datetime
from typing import Optional
from uuid import uuid4, UUID

from sqlalchemy import String, Text, DateTime, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from mailroom.lib.clock import utcnow
from mailroom.lib.db import Base


class EmailUnsubscribe(Base):
    """
    Unsubscribed address. Applies to every campaign type, never to transactional mail.
    """
    __tablename__ = "email_unsubscribes"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    email: Mapped[str] = mapped_column(
        String(320),
        nullable=False,
        unique=True,
        comment="Stored lower-cased and stripped",
    )
    source: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="webhook, admin, link",
    )
    campaign_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        nullable=True,
        comment="Campaign that triggered the unsubscribe, if any",
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    unsubscribed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<EmailUnsubscribe(email={self.email}, source={self.source})>"
