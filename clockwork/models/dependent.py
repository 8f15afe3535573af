"""
Dependent model - clients (specialists) and members (gyms) owned by an account.
Rows are archived, never deleted.
"""

from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey, Uuid, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from clockwork.utils.database import Base
import uuid
import enum


class DependentKind(str, enum.Enum):
    CLIENT = "client"
    MEMBER = "member"


class Dependent(Base):
    __tablename__ = "dependents"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    account_id = Column(Uuid, ForeignKey("accounts.id"), nullable=False, index=True)

    kind = Column(String(20), nullable=False, default=DependentKind.CLIENT.value)
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    phone = Column(String(50))

    # Soft state - archiving flips these, nothing else
    is_active = Column(Boolean, nullable=False, default=True)
    is_archived = Column(Boolean, nullable=False, default=False)
    archived_at = Column(DateTime(timezone=True))
    archived_reason = Column(String(255))
    marked_for_cleanup = Column(Boolean, nullable=False, default=False)

    last_activity = Column(DateTime(timezone=True), server_default=func.now())

    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    account = relationship("Account", back_populates="dependents")

    __table_args__ = (
        Index("idx_dependents_active", "account_id", "is_active", "is_archived"),
        Index("idx_dependents_activity", "account_id", "last_activity"),
    )

    def __repr__(self):
        return f"<Dependent(id={self.id}, account_id={self.account_id}, active={self.is_active})>"
