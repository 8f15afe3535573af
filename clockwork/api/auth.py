"""
Authentication API endpoints
Handles account signup and password login
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from pydantic import BaseModel, EmailStr, Field
from datetime import timedelta
import logging

from clockwork.config.settings import settings
from clockwork.config.tiers import AccountCategory, default_tier_for
from clockwork.models.account import Account, SubscriptionStatus
from clockwork.utils.database import get_db, utcnow
from clockwork.utils.security import create_access_token, hash_password, verify_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["authentication"])


# Pydantic models
class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    name: str = Field(min_length=1, max_length=255)
    category: AccountCategory = AccountCategory.SPECIALIST


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class AuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    account_id: str
    tier: str


@router.post("/signup", response_model=AuthResponse, status_code=201)
async def signup(
    signup_data: SignupRequest,
    db: AsyncSession = Depends(get_db)
):
    """Create an account on the default tier of its category with a trial window"""
    email = signup_data.email.lower()

    result = await db.execute(select(Account).where(Account.email == email))
    if result.scalar_one_or_none():
        raise HTTPException(status_code=400, detail="Email already registered")

    tier = default_tier_for(signup_data.category)
    account = Account(
        email=email,
        name=signup_data.name,
        password_hash=hash_password(signup_data.password),
        category=signup_data.category.value,
        tier_id=tier.id,
        active_dependent_count=0,
        subscription_status=SubscriptionStatus.TRIALING.value,
        trial_ends_at=utcnow() + timedelta(days=settings.trial_days),
    )
    db.add(account)
    await db.commit()
    await db.refresh(account)

    logger.info(f"Account created: {account.email} ({account.category}/{tier.id})")

    return AuthResponse(
        access_token=create_access_token(str(account.id)),
        account_id=str(account.id),
        tier=account.tier_id,
    )


@router.post("/login", response_model=AuthResponse)
async def login(
    login_data: LoginRequest,
    db: AsyncSession = Depends(get_db)
):
    """Authenticate account with email and password"""
    result = await db.execute(
        select(Account).where(Account.email == login_data.email.lower())
    )
    account = result.scalar_one_or_none()

    if not account or not verify_password(login_data.password, account.password_hash):
        raise HTTPException(
            status_code=401,
            detail="Invalid email or password"
        )

    return AuthResponse(
        access_token=create_access_token(str(account.id)),
        account_id=str(account.id),
        tier=account.tier_id,
    )
