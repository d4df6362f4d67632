"""
Preorder model - storefront preorders awaiting conversion to a paid order.

Owned by the storefront; the mailroom only reads it when building
preorder-conversion audiences.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4, UUID
import enum

from sqlalchemy import String, Boolean, Numeric, DateTime, Uuid, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from mailroom.lib.clock import utcnow
from mailroom.lib.db import Base
from mailroom.models.campaigns import _enum_values


class ConversionStatus(str, enum.Enum):
    PENDING = "pending"
    CONVERTED = "converted"
    EXPIRED = "expired"


class Preorder(Base):
    __tablename__ = "preorders"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    box_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    conversion_status: Mapped[ConversionStatus] = mapped_column(
        SQLEnum(ConversionStatus, name="preorder_conversion_status", values_callable=_enum_values),
        nullable=False,
        default=ConversionStatus.PENDING,
        index=True,
    )
    conversion_token: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True)
    conversion_token_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    email_consent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    promo_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    original_price_eur: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    final_price_eur: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<Preorder(id={self.id}, email={self.email}, status={self.conversion_status})>"
