"""
Scheduled task model - deferred work consumed by the task sweep
"""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Uuid, Index
from sqlalchemy.sql import func
from clockwork.utils.database import Base, JSONType
import enum


class TaskType(str, enum.Enum):
    ARCHIVE_DEPENDENT = "archive_dependent"
    SEND_LIMIT_WARNING = "send_limit_warning"
    RETRY_PAYMENT = "retry_payment"
    SEND_RETENTION_EMAIL = "send_retention_email"


class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ScheduledTask(Base):
    __tablename__ = "scheduled_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_type = Column(String(100), nullable=False)
    account_id = Column(Uuid, ForeignKey("accounts.id"), index=True)
    dependent_id = Column(Uuid, ForeignKey("dependents.id"))

    execute_at = Column(DateTime(timezone=True), nullable=False)
    claimed_at = Column(DateTime(timezone=True))
    executed_at = Column(DateTime(timezone=True))
    status = Column(String(50), nullable=False, default=TaskStatus.PENDING.value)

    payload = Column(JSONType, default=dict)
    result = Column(JSONType)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_scheduled_tasks_due", "status", "execute_at"),
    )

    def __repr__(self):
        return f"<ScheduledTask(id={self.id}, type='{self.task_type}', status='{self.status}')>"
