"""
Billing Management Service
Handle subscription creation, tier changes, cancellation and payment setup
"""

import stripe
import logging
from typing import Dict, Any, Optional
from datetime import datetime, timedelta, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from clockwork.config.settings import settings
from clockwork.config.tiers import TierDefinition, get_tier, get_price_id
from clockwork.errors import BillingError
from clockwork.models.account import Account, SubscriptionStatus
from clockwork.models.scheduled_task import ScheduledTask, TaskType
from clockwork.services.restrictions import restriction_engine, CapacityCheck
from clockwork.utils.database import utcnow

logger = logging.getLogger(__name__)

# Configure Stripe
stripe.api_key = settings.stripe_secret_key

# Retention email goes out this long after the cancellation request
RETENTION_EMAIL_DELAY_DAYS = 1


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    """Stripe epoch seconds to an aware UTC datetime"""
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def subscription_period_end(subscription) -> Optional[datetime]:
    """
    End of the current billing period. Newer API versions moved
    current_period_end from the subscription onto its items.
    """
    period_end = subscription.get("current_period_end")
    if not period_end:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            period_end = items[0].get("current_period_end")
    return from_timestamp(period_end)


class BillingService:
    """Manages Stripe billing operations"""

    def _require_tier(self, tier_id: str) -> TierDefinition:
        tier = get_tier(tier_id)
        if tier is None:
            raise BillingError(f"Invalid tier: {tier_id}", status_code=400)
        return tier

    def _require_price(self, tier: TierDefinition) -> str:
        price_id = get_price_id(tier)
        if not price_id:
            raise BillingError(f"No Stripe price configured for tier {tier.id}", status_code=400)
        return price_id

    async def ensure_customer(self, db: AsyncSession, account: Account) -> str:
        """Create the Stripe customer for an account on first use"""
        if account.stripe_customer_id:
            return account.stripe_customer_id

        try:
            customer = stripe.Customer.create(
                email=account.email,
                name=account.name,
                metadata={
                    "account_id": str(account.id),
                    "category": account.category,
                }
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to create Stripe customer for {account.email}: {e}")
            raise BillingError.from_stripe(e)

        account.stripe_customer_id = customer["id"]
        logger.info(f"Created Stripe customer {customer['id']} for account {account.id}")
        return customer["id"]

    async def create_subscription(
        self,
        db: AsyncSession,
        account: Account,
        tier_id: str,
        payment_method_id: str
    ) -> Dict[str, Any]:
        """Subscribe an account to a tier with the configured trial window"""
        tier = self._require_tier(tier_id)
        price_id = self._require_price(tier)

        customer_id = await self.ensure_customer(db, account)

        try:
            stripe.PaymentMethod.attach(payment_method_id, customer=customer_id)
            stripe.Customer.modify(
                customer_id,
                invoice_settings={"default_payment_method": payment_method_id}
            )
            subscription = stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": price_id}],
                trial_period_days=settings.trial_days,
                payment_behavior="default_incomplete",
                expand=["latest_invoice.payment_intent"],
                metadata={
                    "account_id": str(account.id),
                    "tier_id": tier.id,
                }
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to create subscription for account {account.id}: {e}")
            # Keep a freshly created customer id
            await db.commit()
            raise BillingError.from_stripe(e)

        account.tier_id = tier.id
        account.stripe_subscription_id = subscription["id"]
        account.subscription_status = subscription["status"]
        account.subscription_start_date = utcnow()
        account.trial_ends_at = from_timestamp(subscription.get("trial_end"))
        await restriction_engine.clear_restrictions(db, account)
        await db.commit()

        logger.info(f"Subscription {subscription['id']} created: account={account.id}, tier={tier.id}")

        client_secret = None
        latest_invoice = subscription.get("latest_invoice")
        if isinstance(latest_invoice, dict) and latest_invoice.get("payment_intent"):
            client_secret = latest_invoice["payment_intent"].get("client_secret")

        return {
            "subscription_id": subscription["id"],
            "status": subscription["status"],
            "tier": tier.id,
            "trial_ends_at": account.trial_ends_at,
            "client_secret": client_secret,
        }

    async def update_subscription(self, db: AsyncSession, account: Account, new_tier_id: str) -> CapacityCheck:
        """Move the subscription to another tier with prorated billing"""
        if not account.stripe_subscription_id:
            raise BillingError("No active subscription found", status_code=400)

        tier = self._require_tier(new_tier_id)
        new_price_id = self._require_price(tier)
        old_tier_id = account.tier_id

        try:
            subscription = stripe.Subscription.retrieve(account.stripe_subscription_id)
            stripe.Subscription.modify(
                account.stripe_subscription_id,
                items=[{
                    "id": subscription["items"]["data"][0]["id"],
                    "price": new_price_id,
                }],
                proration_behavior="create_prorations",
                metadata={
                    "account_id": str(account.id),
                    "tier_id": tier.id,
                }
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to update subscription for account {account.id}: {e}")
            raise BillingError.from_stripe(e)

        account.tier_id = tier.id
        # A downgrade can land the account over its new limit
        check = await restriction_engine.check_capacity(db, account)
        await db.commit()

        logger.info(f"Account {account.id} changed tier: {old_tier_id} -> {tier.id} (restricted={check.restricted})")
        return check

    async def cancel_subscription(self, db: AsyncSession, account: Account, reason: Optional[str] = None) -> Dict[str, Any]:
        """Cancel at period end; access continues until then"""
        if not account.stripe_subscription_id:
            raise BillingError("No active subscription found", status_code=400)

        try:
            subscription = stripe.Subscription.modify(
                account.stripe_subscription_id,
                cancel_at_period_end=True
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to cancel subscription for account {account.id}: {e}")
            raise BillingError.from_stripe(e)

        cancel_date = subscription_period_end(subscription) or utcnow()
        account.subscription_status = SubscriptionStatus.CANCELING.value
        account.cancellation_date = cancel_date
        account.cancellation_reason = reason

        db.add(ScheduledTask(
            task_type=TaskType.SEND_RETENTION_EMAIL.value,
            account_id=account.id,
            execute_at=utcnow() + timedelta(days=RETENTION_EMAIL_DELAY_DAYS),
            payload={"cancel_date": cancel_date.isoformat(), "reason": reason},
        ))
        await db.commit()

        logger.info(f"Subscription {account.stripe_subscription_id} set to cancel on {cancel_date.date()}")
        return {
            "status": account.subscription_status,
            "cancel_date": cancel_date,
        }

    async def create_setup_intent(self, db: AsyncSession, account: Account) -> Dict[str, Any]:
        """SetupIntent for collecting a payment method client-side"""
        customer_id = await self.ensure_customer(db, account)
        await db.commit()

        try:
            intent = stripe.SetupIntent.create(
                customer=customer_id,
                payment_method_types=["card"],
                usage="off_session",
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to create setup intent for account {account.id}: {e}")
            raise BillingError.from_stripe(e)

        return {"client_secret": intent["client_secret"], "setup_intent_id": intent["id"]}

    async def retry_invoice_payment(self, stripe_invoice_id: str) -> Dict[str, Any]:
        """Attempt to collect an open invoice again"""
        try:
            invoice = stripe.Invoice.pay(stripe_invoice_id)
        except stripe.StripeError as e:
            logger.warning(f"Payment retry failed for invoice {stripe_invoice_id}: {e}")
            raise BillingError.from_stripe(e)

        logger.info(f"Payment retry for invoice {stripe_invoice_id}: {invoice['status']}")
        return {"invoice_id": invoice["id"], "status": invoice["status"], "paid": invoice["status"] == "paid"}


# Global service instance
billing_service = BillingService()
