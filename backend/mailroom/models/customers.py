"""
Customer model - registered storefront customers (read-only for the mailroom).
"""
from datetime import datetime
from typing import Optional
from uuid import uuid4, UUID

from sqlalchemy import String, Integer, DateTime, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from mailroom.lib.clock import utcnow
from mailroom.lib.db import Base


class Customer(Base):
    """
    Customer entity - registered account holders.
    """
    __tablename__ = "customers"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Order history
    order_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_order_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, last_order={self.last_order_at})>"
