"""
Billing event model - append-only audit log of Stripe webhook deliveries
"""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Uuid
from sqlalchemy.sql import func
from clockwork.utils.database import Base, JSONType


class BillingEvent(Base):
    __tablename__ = "billing_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Uuid, ForeignKey("accounts.id"), index=True)
    event_type = Column(String(100), nullable=False)
    # Unique so a redelivered event is never processed twice
    stripe_event_id = Column(String(255), unique=True, nullable=False)
    event_data = Column(JSONType)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    def __repr__(self):
        return f"<BillingEvent(id={self.id}, type='{self.event_type}', stripe_event_id='{self.stripe_event_id}')>"
