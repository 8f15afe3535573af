"""
Restriction middleware
Per-request capacity enforcement, billing headers and API usage tracking
"""

import re
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request, Response, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clockwork.config.settings import settings
from clockwork.config.tiers import TierDefinition, is_at_limit
from clockwork.errors import RestrictionError
from clockwork.middleware.auth import require_auth
from clockwork.models.account import Account, RestrictionReason
from clockwork.services.restrictions import restriction_engine
from clockwork.services.usage_tracker import usage_tracker, resolve_tier
from clockwork.utils.database import get_db

logger = logging.getLogger(__name__)

# Actions blocked while an account is restricted: (method, path pattern)
RESTRICTED_ACTIONS = [
    ("POST", re.compile(r"^/api/v1/clients/?$")),
    ("PUT", re.compile(r"^/api/v1/clients/[^/]+/activate/?$")),
    ("POST", re.compile(r"^/api/v1/clients/import/?$")),
    ("POST", re.compile(r"^/api/v1/clients/bulk/?$")),
]


@dataclass
class BillingContext:
    account_id: str
    tier: TierDefinition
    client_count: int
    client_limit: int
    is_restricted: bool
    restriction_reason: Optional[str]


def is_restricted_action(method: str, path: str) -> bool:
    return any(method == m and pattern.match(path) for m, pattern in RESTRICTED_ACTIONS)


def billing_headers(context: BillingContext) -> dict:
    return {
        "X-Billing-Tier": context.tier.name,
        "X-Client-Count": str(context.client_count),
        "X-Client-Limit": "unlimited" if context.tier.is_unlimited else str(context.client_limit),
        "X-Account-Restricted": "true" if context.is_restricted else "false",
    }


async def _sync_restriction(db: AsyncSession, account: Account, tier: TierDefinition):
    """Persist a capacity restriction (or lift a stale one) before deciding"""
    count = account.active_dependent_count or 0
    at_limit = is_at_limit(count, tier)
    stale = (
        account.is_restricted
        and account.restriction_reason == RestrictionReason.CAPACITY_EXCEEDED.value
        and not at_limit
    )
    if (at_limit and not account.is_restricted) or stale:
        await restriction_engine.check_capacity(db, account)
        await db.commit()


async def _track_api_call(db: AsyncSession, account: Account):
    account_id = account.id
    try:
        await usage_tracker.track_metric(db, account_id, "api_calls")
        await db.commit()
    except SQLAlchemyError as e:
        logger.warning(f"Failed to track api_calls for account {account_id}: {e}")
        await db.rollback()
        # Rollback expires the account the route handler is about to use
        await db.refresh(account)


async def enforce_restrictions(
    request: Request,
    response: Response,
    account: Account = Depends(require_auth),
    db: AsyncSession = Depends(get_db)
) -> BillingContext:
    """
    Dependency for account routes. Restricted accounts keep read access;
    only the actions in RESTRICTED_ACTIONS are rejected with a 403 upgrade
    payload, before the route handler runs.
    """
    tier = resolve_tier(account)
    await _sync_restriction(db, account, tier)

    context = BillingContext(
        account_id=str(account.id),
        tier=tier,
        client_count=account.active_dependent_count or 0,
        client_limit=tier.dependent_limit,
        is_restricted=account.is_restricted,
        restriction_reason=account.restriction_reason,
    )
    request.state.billing = context

    if account.is_restricted and is_restricted_action(request.method, request.url.path):
        logger.info(f"Blocked {request.method} {request.url.path} for restricted account {account.id} ({account.restriction_reason})")
        raise RestrictionError(restriction_engine.build_restriction_payload(account))

    response.headers.update(billing_headers(context))

    if settings.enable_usage_tracking:
        await _track_api_call(db, account)

    return context
