"""
Clients API endpoints
Dependents (clients or gym members) of the logged-in account
"""

import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from clockwork.middleware.auth import require_auth
from clockwork.middleware.restrictions import enforce_restrictions
from clockwork.models.account import Account
from clockwork.models.dependent import DependentKind
from clockwork.services.dependents import dependent_service
from clockwork.utils.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/clients",
    tags=["clients"],
    dependencies=[Depends(enforce_restrictions)],
)


# Pydantic models
class ClientCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, max_length=50)
    kind: DependentKind = DependentKind.CLIENT

    def to_fields(self) -> dict:
        data = self.model_dump()
        data["kind"] = self.kind.value
        return data


class ClientImport(BaseModel):
    clients: List[ClientCreate] = Field(min_length=1, max_length=1000)


class ClientArchiveRequest(BaseModel):
    client_ids: List[uuid.UUID] = Field(min_length=1)
    reason: Optional[str] = None


class ClientResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    kind: str
    is_active: bool
    is_archived: bool
    archived_at: Optional[datetime] = None
    archived_reason: Optional[str] = None
    last_activity: Optional[datetime] = None
    created_at: Optional[datetime] = None


@router.get("", response_model=List[ClientResponse])
async def list_clients(
    include_archived: bool = False,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    account: Account = Depends(require_auth),
    db: AsyncSession = Depends(get_db)
):
    """List clients. Always allowed, restricted or not."""
    return await dependent_service.list_dependents(
        db, account, include_archived=include_archived, limit=limit, offset=offset
    )


@router.post("", response_model=ClientResponse, status_code=201)
async def create_client(
    client: ClientCreate,
    account: Account = Depends(require_auth),
    db: AsyncSession = Depends(get_db)
):
    return await dependent_service.create_dependent(db, account, client.to_fields())


@router.post("/import", response_model=List[ClientResponse], status_code=201)
async def import_clients(
    payload: ClientImport,
    account: Account = Depends(require_auth),
    db: AsyncSession = Depends(get_db)
):
    """Create many clients at once; all or nothing"""
    return await dependent_service.import_dependents(db, account, [c.to_fields() for c in payload.clients])


@router.post("/bulk", response_model=List[ClientResponse], status_code=201)
async def bulk_create_clients(
    clients: List[ClientCreate],
    account: Account = Depends(require_auth),
    db: AsyncSession = Depends(get_db)
):
    return await dependent_service.import_dependents(db, account, [c.to_fields() for c in clients])


@router.post("/archive", response_model=List[ClientResponse])
async def archive_clients(
    payload: ClientArchiveRequest,
    account: Account = Depends(require_auth),
    db: AsyncSession = Depends(get_db)
):
    """Soft-archive clients. Allowed while restricted; it is how an account frees capacity."""
    return await dependent_service.archive_dependents(db, account, payload.client_ids, reason=payload.reason)


@router.get("/{client_id}", response_model=ClientResponse)
async def get_client(
    client_id: uuid.UUID,
    account: Account = Depends(require_auth),
    db: AsyncSession = Depends(get_db)
):
    return await dependent_service.get_dependent(db, account, client_id)


@router.put("/{client_id}/activate", response_model=ClientResponse)
async def activate_client(
    client_id: uuid.UUID,
    account: Account = Depends(require_auth),
    db: AsyncSession = Depends(get_db)
):
    """Reactivate an archived client if capacity allows"""
    return await dependent_service.reactivate_dependent(db, account, client_id)
