"""
Notification model - email dispatch log
"""

from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey, Text, Integer, Uuid
from sqlalchemy.sql import func
from clockwork.utils.database import Base


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Uuid, ForeignKey("accounts.id"), index=True)

    template = Column(String(100), nullable=False)
    recipient = Column(String(255), nullable=False)
    provider_msg_id = Column(String(255))  # Brevo message ID
    success = Column(Boolean, nullable=False)
    error_message = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    def __repr__(self):
        return f"<Notification(id={self.id}, template='{self.template}', success={self.success})>"
