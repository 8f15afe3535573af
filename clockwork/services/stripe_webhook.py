"""
Stripe Webhook Handler
Verifies, deduplicates and applies Stripe events to accounts and invoices
"""

import stripe
import logging
import uuid
from decimal import Decimal
from typing import Dict, Any, Optional
from datetime import timedelta
from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError
from sqlalchemy import select
from clockwork.config.settings import settings
from clockwork.config.tiers import get_tier, tier_for_price_id, get_next_tier
from clockwork.models.account import Account, SubscriptionStatus, RestrictionReason
from clockwork.models.billing_event import BillingEvent
from clockwork.models.invoice import Invoice, InvoiceStatus
from clockwork.models.scheduled_task import ScheduledTask, TaskType
from clockwork.services.billing import from_timestamp, subscription_period_end
from clockwork.services.restrictions import restriction_engine
from clockwork.utils.database import utcnow
from clockwork.utils.email_brevo import email_service

logger = logging.getLogger(__name__)

# Configure Stripe
stripe.api_key = settings.stripe_secret_key


class StripeWebhookHandler:
    """Handles Stripe webhook events"""

    def __init__(self):
        self.webhook_secret = settings.stripe_webhook_secret
        if not self.webhook_secret:
            logger.warning("STRIPE_WEBHOOK_SECRET not configured")

    def verify_webhook_signature(self, payload: bytes, sig_header: Optional[str]) -> stripe.Event:
        """Verify webhook signature and construct event"""
        if not sig_header:
            logger.error("Missing Stripe-Signature header")
            raise HTTPException(status_code=400, detail="Missing signature")
        try:
            return stripe.Webhook.construct_event(
                payload, sig_header, self.webhook_secret
            )
        except ValueError as e:
            logger.error(f"Invalid payload: {e}")
            raise HTTPException(status_code=400, detail="Invalid payload")
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid signature: {e}")
            raise HTTPException(status_code=400, detail="Invalid signature")

    async def process_event(self, db: AsyncSession, event) -> Dict[str, Any]:
        """
        Log and apply one event in a single transaction.

        A delivery whose event id is already logged is acknowledged without
        side effects. If a handler raises, the audit row is rolled back with
        everything else so a redelivery is processed from scratch.
        """
        event_id = event["id"]
        event_type = event["type"]

        existing = await db.execute(
            select(BillingEvent.id).where(BillingEvent.stripe_event_id == event_id)
        )
        if existing.scalar_one_or_none() is not None:
            logger.info(f"Duplicate Stripe event ignored: {event_id} ({event_type})")
            return {"received": True, "duplicate": True}

        obj = event["data"]["object"]
        account = await self._find_account(db, obj)

        db.add(BillingEvent(
            account_id=account.id if account else None,
            event_type=event_type,
            stripe_event_id=event_id,
            event_data=obj.to_dict() if hasattr(obj, "to_dict") else dict(obj),
        ))
        try:
            await db.flush()
        except IntegrityError:
            # Concurrent delivery of the same event won the insert
            await db.rollback()
            logger.info(f"Duplicate Stripe event ignored: {event_id} ({event_type})")
            return {"received": True, "duplicate": True}

        try:
            result = await self.handle_event(db, event_type, obj, account)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(f"Processed Stripe event {event_id}: {event_type} -> {result.get('action')}")
        return {"received": True, **result}

    async def handle_event(self, db: AsyncSession, event_type: str, obj, account: Optional[Account]) -> Dict[str, Any]:
        """Route webhook events to appropriate handlers"""
        logger.info(f"Processing Stripe event: {event_type}")

        handlers = {
            "customer.subscription.created": self.handle_subscription_created,
            "customer.subscription.updated": self.handle_subscription_updated,
            "customer.subscription.deleted": self.handle_subscription_deleted,
            "customer.subscription.trial_will_end": self.handle_trial_will_end,
            "invoice.payment_succeeded": self.handle_payment_succeeded,
            "invoice.payment_failed": self.handle_payment_failed,
        }
        handler = handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled event type: {event_type}")
            return {"status": "ignored", "action": None}

        if account is None:
            logger.warning(f"No account found for {event_type} ({obj.get('id')})")
            return {"status": "warning", "action": None, "message": "Account not found"}

        return await handler(db, obj, account)

    async def _find_account(self, db: AsyncSession, obj) -> Optional[Account]:
        """Resolve the account from metadata, subscription id or customer id"""
        metadata = obj.get("metadata") or {}
        if metadata.get("account_id"):
            result = await db.execute(
                select(Account).where(Account.id == _as_uuid(metadata["account_id"]))
            )
            account = result.scalar_one_or_none()
            if account:
                return account

        subscription_id = obj.get("id") if obj.get("object") == "subscription" else _invoice_subscription_id(obj)
        if subscription_id:
            result = await db.execute(
                select(Account).where(Account.stripe_subscription_id == subscription_id)
            )
            account = result.scalar_one_or_none()
            if account:
                return account

        customer_id = obj.get("customer")
        if customer_id:
            result = await db.execute(
                select(Account).where(Account.stripe_customer_id == customer_id)
            )
            return result.scalar_one_or_none()
        return None

    async def handle_subscription_created(self, db: AsyncSession, subscription, account: Account) -> Dict[str, Any]:
        """Handle new subscription creation"""
        account.stripe_subscription_id = subscription["id"]
        account.subscription_status = subscription["status"]
        account.subscription_start_date = account.subscription_start_date or utcnow()
        if subscription.get("trial_end"):
            account.trial_ends_at = from_timestamp(subscription["trial_end"])

        tier = _subscription_tier(subscription)
        if tier:
            account.tier_id = tier.id

        await restriction_engine.clear_restrictions(db, account)

        return {
            "status": "success",
            "action": "subscription_created",
            "account_id": str(account.id),
            "tier": account.tier_id,
        }

    async def handle_subscription_updated(self, db: AsyncSession, subscription, account: Account) -> Dict[str, Any]:
        """Handle subscription changes (upgrades, downgrades)"""
        old_tier = account.tier_id
        tier = _subscription_tier(subscription)
        if tier:
            account.tier_id = tier.id

        status = subscription["status"]
        if subscription.get("cancel_at_period_end") and status in ("active", "trialing"):
            account.subscription_status = SubscriptionStatus.CANCELING.value
            account.cancellation_date = subscription_period_end(subscription)
        else:
            account.subscription_status = status

        check = await restriction_engine.check_capacity(db, account)

        logger.info(f"Updated account {account.email} subscription: {old_tier} -> {account.tier_id}")
        return {
            "status": "success",
            "action": "subscription_updated",
            "account_id": str(account.id),
            "old_tier": old_tier,
            "new_tier": account.tier_id,
            "restricted": check.restricted,
        }

    async def handle_subscription_deleted(self, db: AsyncSession, subscription, account: Account) -> Dict[str, Any]:
        """
        Handle subscription end. The account is restricted, nothing is
        deleted; dependents stay readable.
        """
        account.subscription_status = SubscriptionStatus.CANCELED.value
        account.cancellation_date = (
            from_timestamp(subscription.get("ended_at"))
            or from_timestamp(subscription.get("canceled_at"))
            or utcnow()
        )
        await restriction_engine.apply_restriction(db, account, RestrictionReason.SUBSCRIPTION_CANCELED)

        await email_service.send_template_email(
            to_email=account.email,
            to_name=account.name,
            template="subscription_canceled",
            context={"name": account.first_name},
            db=db,
            account_id=account.id,
        )

        logger.info(f"Cancelled subscription for account {account.email}")
        return {
            "status": "success",
            "action": "subscription_canceled",
            "account_id": str(account.id),
        }

    async def handle_trial_will_end(self, db: AsyncSession, subscription, account: Account) -> Dict[str, Any]:
        trial_end = from_timestamp(subscription.get("trial_end")) or account.trial_ends_at
        await email_service.send_template_email(
            to_email=account.email,
            to_name=account.name,
            template="trial_ending",
            context={
                "name": account.first_name,
                "trial_ends_date": trial_end.strftime("%B %d, %Y") if trial_end else "soon",
                "next_tier": get_next_tier(account.tier_id),
            },
            db=db,
            account_id=account.id,
        )
        return {"status": "success", "action": "trial_ending_notified", "account_id": str(account.id)}

    async def handle_payment_succeeded(self, db: AsyncSession, invoice, account: Account) -> Dict[str, Any]:
        """Handle successful payment"""
        record = await self._upsert_invoice(db, invoice, account, InvoiceStatus.PAID)
        record.paid_date = utcnow().date()

        if account.subscription_status == SubscriptionStatus.PAST_DUE.value:
            account.subscription_status = SubscriptionStatus.ACTIVE.value

        if account.is_restricted and account.restriction_reason == RestrictionReason.PAYMENT_FAILED.value:
            await restriction_engine.clear_restrictions(db, account)
            await restriction_engine.check_capacity(db, account, notify=False)

        logger.info(f"Payment succeeded for account {account.id}, invoice {invoice['id']}")
        return {
            "status": "success",
            "action": "payment_succeeded",
            "invoice_id": invoice["id"],
        }

    async def handle_payment_failed(self, db: AsyncSession, invoice, account: Account) -> Dict[str, Any]:
        """Handle failed payment: restrict, email, and schedule a retry after the grace period"""
        record = await self._upsert_invoice(db, invoice, account, InvoiceStatus.PENDING)

        account.subscription_status = SubscriptionStatus.PAST_DUE.value
        await restriction_engine.apply_restriction(db, account, RestrictionReason.PAYMENT_FAILED)

        retry_at = utcnow() + timedelta(days=settings.grace_period_days)
        db.add(ScheduledTask(
            task_type=TaskType.RETRY_PAYMENT.value,
            account_id=account.id,
            execute_at=retry_at,
            payload={
                "stripe_invoice_id": invoice["id"],
                "invoice_number": record.invoice_number,
                "attempt_count": invoice.get("attempt_count") or 1,
            },
        ))

        await email_service.send_template_email(
            to_email=account.email,
            to_name=account.name,
            template="payment_failed",
            context={
                "name": account.first_name,
                "amount": f"{record.amount:.2f}",
                "currency": record.currency,
                "invoice_number": record.invoice_number,
                "retry_date": retry_at.strftime("%B %d, %Y"),
                "pay_url": invoice.get("hosted_invoice_url") or f"{settings.app_url}/billing",
            },
            db=db,
            account_id=account.id,
        )

        logger.warning(f"Payment failed for account {account.id}, invoice {invoice['id']}")
        return {
            "status": "success",
            "action": "payment_failed",
            "invoice_id": invoice["id"],
            "retry_at": retry_at.isoformat(),
        }

    async def _upsert_invoice(self, db: AsyncSession, invoice, account: Account, status: InvoiceStatus) -> Invoice:
        result = await db.execute(
            select(Invoice).where(Invoice.stripe_invoice_id == invoice["id"])
        )
        record = result.scalar_one_or_none()
        amount = Decimal(invoice.get("amount_due") or invoice.get("amount_paid") or 0) / 100

        if record is None:
            record = Invoice(
                stripe_invoice_id=invoice["id"],
                invoice_number=invoice.get("number") or invoice["id"],
                account_id=account.id,
                amount=amount,
                currency=(invoice.get("currency") or "usd").upper(),
                due_date=_due_date(invoice),
                items=_invoice_items(invoice),
            )
            db.add(record)

        record.status = status.value
        return record


def _as_uuid(value):
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _subscription_tier(subscription):
    metadata = subscription.get("metadata") or {}
    tier = get_tier(metadata.get("tier_id"))
    if tier:
        return tier
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        return tier_for_price_id(items[0]["price"]["id"])
    return None


def _invoice_subscription_id(invoice) -> Optional[str]:
    if invoice.get("subscription"):
        return invoice["subscription"]
    # Newer API versions nest it under parent.subscription_details
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return details.get("subscription")


def _due_date(invoice):
    due = from_timestamp(invoice.get("due_date")) or from_timestamp(invoice.get("created"))
    return due.date() if due else utcnow().date()


def _invoice_items(invoice):
    lines = (invoice.get("lines") or {}).get("data") or []
    return [
        {
            "description": line.get("description"),
            "amount": (line.get("amount") or 0) / 100,
            "quantity": line.get("quantity"),
        }
        for line in lines
    ]


# Global handler instance
webhook_handler = StripeWebhookHandler()
