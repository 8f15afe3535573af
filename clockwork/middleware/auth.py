"""
Authentication middleware for bearer-token sessions
"""
import uuid
from typing import Optional

from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from clockwork.models.account import Account
from clockwork.utils.database import get_db
from clockwork.utils.security import verify_token

security = HTTPBearer(auto_error=False)


async def get_current_account(
    db: AsyncSession = Depends(get_db),
    token: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Optional[Account]:
    """Get current authenticated account from JWT token"""
    if not token:
        return None

    payload = verify_token(token.credentials)
    account_id = payload.get("sub")
    if not account_id:
        return None
    try:
        account_uuid = uuid.UUID(account_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token")

    result = await db.execute(select(Account).where(Account.id == account_uuid))
    return result.scalar_one_or_none()


async def require_auth(account: Optional[Account] = Depends(get_current_account)) -> Account:
    """Require authentication, raise 401 if not authenticated"""
    if not account:
        raise HTTPException(status_code=401, detail="Authentication required")
    return account
