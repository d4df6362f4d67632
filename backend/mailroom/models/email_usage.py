"""
Monthly email usage - counts sends against the provider plan limit.
"""
from datetime import date, datetime

from sqlalchemy import Integer, Date, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from mailroom.lib.clock import utcnow
from mailroom.lib.db import Base


class EmailMonthlyUsage(Base):
    __tablename__ = "email_monthly_usage"

    month: Mapped[date] = mapped_column(
        Date,
        primary_key=True,
        comment="First day of the month",
    )
    campaign_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transactional_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    monthly_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=5000)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    @property
    def total_sent(self) -> int:
        return self.campaign_sent + self.transactional_sent

    def __repr__(self) -> str:
        return f"<EmailMonthlyUsage(month={self.month}, sent={self.total_sent}/{self.monthly_limit})>"
