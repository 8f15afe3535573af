"""
Account model - each paying business (individual, specialist, gym, enterprise)
"""

from sqlalchemy import Column, String, DateTime, Boolean, Integer, Text, Uuid
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from clockwork.utils.database import Base
from clockwork.config.tiers import AccountCategory
import uuid
import enum


class SubscriptionStatus(str, enum.Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELING = "canceling"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    UNPAID = "unpaid"


class RestrictionReason(str, enum.Enum):
    CAPACITY_EXCEEDED = "capacity_exceeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


class Account(Base):
    __tablename__ = "accounts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False)
    password_hash = Column(String(255))  # bcrypt hash
    category = Column(String(50), nullable=False, default=AccountCategory.SPECIALIST.value)
    tier_id = Column(String(50), nullable=False, default="starter", index=True)

    # Usage - recomputed on every dependent state change
    active_dependent_count = Column(Integer, nullable=False, default=0)
    last_limit_check = Column(DateTime(timezone=True))

    # Restriction
    is_restricted = Column(Boolean, nullable=False, default=False, index=True)
    restriction_reason = Column(String(50))  # RestrictionReason enum
    restricted_at = Column(DateTime(timezone=True))

    # Stripe integration fields
    stripe_customer_id = Column(String(255), index=True)
    stripe_subscription_id = Column(String(255), index=True)
    subscription_status = Column(String(50), nullable=False, default=SubscriptionStatus.TRIALING.value)
    subscription_start_date = Column(DateTime(timezone=True))
    trial_ends_at = Column(DateTime(timezone=True))
    cancellation_date = Column(DateTime(timezone=True))
    cancellation_reason = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    dependents = relationship("Dependent", back_populates="account")

    @property
    def first_name(self):
        """Extract first name from full name"""
        return self.name.split(' ')[0] if self.name else ''

    def __repr__(self):
        return f"<Account(id={self.id}, email='{self.email}', tier='{self.tier_id}', restricted={self.is_restricted})>"
