"""
Billing API endpoints
Tiers, subscription lifecycle, invoices and capacity relief
"""

import uuid
from datetime import datetime, date, timedelta
from decimal import Decimal
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_
from pydantic import BaseModel, ConfigDict, Field
import logging

from clockwork.config.tiers import (
    AccountCategory,
    list_tiers,
    get_next_tier,
    calculate_usage_percentage,
    is_at_limit,
    is_near_limit,
)
from clockwork.middleware.auth import require_auth
from clockwork.middleware.restrictions import enforce_restrictions
from clockwork.models.account import Account
from clockwork.models.dependent import Dependent
from clockwork.models.invoice import Invoice, InvoiceStatus
from clockwork.services.billing import billing_service
from clockwork.services.dependents import dependent_service
from clockwork.services.usage_tracker import resolve_tier
from clockwork.utils.database import get_db, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


# Pydantic models
class SubscribeRequest(BaseModel):
    tier_id: str
    payment_method_id: str


class UpgradeRequest(BaseModel):
    tier_id: str


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class ArchiveClientsRequest(BaseModel):
    client_ids: List[uuid.UUID] = Field(min_length=1)
    reason: str = "manual_archive"


class InvoiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_number: str
    amount: Decimal
    currency: str
    status: str
    due_date: Optional[date] = None
    paid_date: Optional[date] = None
    created_at: Optional[datetime] = None


def serialize_tier(tier) -> dict:
    return {
        "id": tier.id,
        "name": tier.name,
        "category": tier.category.value,
        "price": tier.price,
        "client_limit": tier.dependent_limit,
        "features": list(tier.features),
    }


async def _paid_revenue(db: AsyncSession, account: Account) -> Decimal:
    result = await db.execute(
        select(func.coalesce(func.sum(Invoice.amount), 0)).where(and_(
            Invoice.account_id == account.id,
            Invoice.status == InvoiceStatus.PAID.value,
        ))
    )
    return Decimal(result.scalar_one() or 0)


@router.get("/tiers")
async def get_tiers(category: Optional[AccountCategory] = None):
    """Public tier listing, cheapest first"""
    return {"tiers": [serialize_tier(t) for t in list_tiers(category)]}


@router.get("/status")
async def get_billing_status(
    account: Account = Depends(require_auth),
    _billing=Depends(enforce_restrictions),
    db: AsyncSession = Depends(get_db)
):
    """Current tier, usage, subscription state and lifetime revenue"""
    tier = resolve_tier(account)
    count = account.active_dependent_count or 0

    return {
        "tier": serialize_tier(tier),
        "usage": {
            "active_clients": count,
            "client_limit": tier.dependent_limit,
            "percentage": round(calculate_usage_percentage(count, tier.dependent_limit)),
            "is_at_limit": is_at_limit(count, tier),
            "is_near_limit": is_near_limit(count, tier),
        },
        "subscription": {
            "status": account.subscription_status,
            "start_date": account.subscription_start_date,
            "trial_ends_at": account.trial_ends_at,
            "cancellation_date": account.cancellation_date,
            "is_restricted": account.is_restricted,
            "restriction_reason": account.restriction_reason,
        },
        "revenue": {
            "total": await _paid_revenue(db, account),
        },
    }


@router.post("/subscribe")
async def subscribe(
    subscribe_request: SubscribeRequest,
    account: Account = Depends(require_auth),
    db: AsyncSession = Depends(get_db)
):
    result = await billing_service.create_subscription(
        db, account, subscribe_request.tier_id, subscribe_request.payment_method_id
    )
    return {"success": True, "subscription": result}


@router.post("/upgrade")
async def upgrade(
    upgrade_request: UpgradeRequest,
    account: Account = Depends(require_auth),
    db: AsyncSession = Depends(get_db)
):
    """Change tier with proration. A downgrade may restrict the account immediately."""
    check = await billing_service.update_subscription(db, account, upgrade_request.tier_id)
    return {
        "success": True,
        "tier": serialize_tier(check.tier),
        "client_count": check.client_count,
        "is_restricted": check.restricted,
        "restriction_reason": check.reason,
        "message": "Subscription updated successfully",
    }


@router.post("/cancel")
async def cancel(
    cancel_request: CancelRequest,
    account: Account = Depends(require_auth),
    db: AsyncSession = Depends(get_db)
):
    result = await billing_service.cancel_subscription(db, account, cancel_request.reason)
    return {
        "success": True,
        "message": "Subscription will be canceled at the end of the billing period",
        "cancel_date": result["cancel_date"],
    }


@router.get("/invoices")
async def get_invoices(
    status: Optional[InvoiceStatus] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    account: Account = Depends(require_auth),
    db: AsyncSession = Depends(get_db)
):
    conditions = [Invoice.account_id == account.id]
    if status:
        conditions.append(Invoice.status == status.value)

    result = await db.execute(
        select(Invoice)
        .where(and_(*conditions))
        .order_by(Invoice.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    invoices = [InvoiceResponse.model_validate(i) for i in result.scalars().all()]

    total = await db.execute(select(func.count(Invoice.id)).where(and_(*conditions)))
    return {"invoices": invoices, "total": total.scalar_one()}


@router.post("/setup-intent")
async def setup_intent(
    account: Account = Depends(require_auth),
    db: AsyncSession = Depends(get_db)
):
    return await billing_service.create_setup_intent(db, account)


@router.post("/archive-clients")
async def archive_clients(
    archive_request: ArchiveClientsRequest,
    account: Account = Depends(require_auth),
    _billing=Depends(enforce_restrictions),
    db: AsyncSession = Depends(get_db)
):
    """Soft-archive clients (never deletes) and re-check capacity"""
    archived = await dependent_service.archive_dependents(
        db, account, archive_request.client_ids, reason=archive_request.reason
    )
    return {
        "success": True,
        "archived": [{"id": str(d.id), "name": d.name} for d in archived],
        "message": f"{len(archived)} clients archived successfully",
        "is_restricted": account.is_restricted,
    }


@router.get("/recommendations")
async def get_recommendations(
    account: Account = Depends(require_auth),
    _billing=Depends(enforce_restrictions),
    db: AsyncSession = Depends(get_db)
):
    """Upgrade suggestions from capacity, 30-day growth and revenue"""
    tier = resolve_tier(account)
    count = account.active_dependent_count or 0

    result = await db.execute(
        select(func.count(Dependent.id)).where(and_(
            Dependent.account_id == account.id,
            Dependent.created_at >= utcnow() - timedelta(days=30),
        ))
    )
    new_30d = result.scalar_one()
    revenue = await _paid_revenue(db, account)
    next_tier = get_next_tier(tier.id)

    recommendations = []
    if is_near_limit(count, tier):
        recommendations.append({
            "type": "upgrade",
            "urgency": "high",
            "reason": "approaching_limit",
            "message": f"You're at {round(calculate_usage_percentage(count, tier.dependent_limit))}% capacity",
            "action": "Upgrade to continue growing",
            "suggested_tier": serialize_tier(next_tier) if next_tier else None,
        })

    growth_rate = new_30d / max(1, count - new_30d)
    if growth_rate > 0.2:
        recommendations.append({
            "type": "upgrade",
            "urgency": "medium",
            "reason": "rapid_growth",
            "message": f"You're growing at {round(growth_rate * 100)}% per month",
            "action": "Upgrade to accommodate growth",
            "suggested_tier": serialize_tier(next_tier) if next_tier else None,
        })

    if tier.price and revenue > Decimal(str(tier.price)) * 12:
        recommendations.append({
            "type": "feature",
            "urgency": "low",
            "reason": "revenue_opportunity",
            "message": "Consider premium features to increase value",
            "action": "Explore enterprise features",
        })

    return {"recommendations": recommendations}
