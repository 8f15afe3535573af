"""
Usage tracking model - metric roll-ups per account and period (usage_tracking table)
"""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Date, Uuid, UniqueConstraint
from sqlalchemy.sql import func
from clockwork.utils.database import Base


class UsageRecord(Base):
    __tablename__ = "usage_tracking"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Uuid, ForeignKey("accounts.id"), nullable=False, index=True)

    metric_name = Column(String(100), nullable=False)
    metric_value = Column(Integer, nullable=False, default=0)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("account_id", "metric_name", "period_start", name="uq_usage_account_metric_period"),
    )

    def __repr__(self):
        return f"<UsageRecord(account_id={self.account_id}, metric='{self.metric_name}', period={self.period_start}, value={self.metric_value})>"
