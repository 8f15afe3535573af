"""
Invoice model - local mirror of Stripe invoices
"""

from sqlalchemy import Column, String, DateTime, Date, ForeignKey, Integer, Numeric, Uuid
from sqlalchemy.sql import func
from clockwork.utils.database import Base, JSONType
import enum


class InvoiceStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    VOID = "void"


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_number = Column(String(50), unique=True, nullable=False)
    account_id = Column(Uuid, ForeignKey("accounts.id"), nullable=False, index=True)
    stripe_invoice_id = Column(String(255), unique=True, index=True)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(50), nullable=False, default=InvoiceStatus.PENDING.value, index=True)
    due_date = Column(Date)
    paid_date = Column(Date)
    items = Column(JSONType, default=list)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Invoice(number='{self.invoice_number}', amount={self.amount}, status='{self.status}')>"
