"""
Usage API endpoints
Track and display plan usage limits
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from clockwork.middleware.auth import require_auth
from clockwork.middleware.restrictions import enforce_restrictions
from clockwork.models.account import Account
from clockwork.services.usage_tracker import usage_tracker
from clockwork.utils.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("/stats")
async def get_usage_stats(
    account: Account = Depends(require_auth),
    _billing=Depends(enforce_restrictions),
    db: AsyncSession = Depends(get_db)
):
    """
    Get current usage statistics for the logged-in account
    """
    return await usage_tracker.get_usage_stats(db, account)
