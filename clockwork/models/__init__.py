"""
Model package initialization
"""

from .account import Account, SubscriptionStatus, RestrictionReason
from .dependent import Dependent, DependentKind
from .billing_event import BillingEvent
from .invoice import Invoice, InvoiceStatus
from .scheduled_task import ScheduledTask, TaskType, TaskStatus
from .usage import UsageRecord
from .notification import Notification

__all__ = [
    # Core models
    "Account",
    "Dependent",
    "BillingEvent",
    "Invoice",
    "ScheduledTask",
    "UsageRecord",
    "Notification",

    # Enums
    "SubscriptionStatus",
    "RestrictionReason",
    "DependentKind",
    "InvoiceStatus",
    "TaskType",
    "TaskStatus",
]
