from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlmodel import Session
from streamvault.api.deps import get_pool, get_registry
from streamvault.api.envelope import ok
from streamvault.core.db import get_session
from streamvault.core.errors import InvalidRequest
from streamvault.services import accounts
from streamvault.services.account_registry import AccountRegistry
from streamvault.services.storage_pool import StoragePool
from typing import Optional
from uuid import UUID

router = APIRouter()


class AddAccountRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    credentials: Optional[dict] = None
    credentials_path: Optional[str] = Field(default=None, alias="credentialsPath")
    capacity_bytes: Optional[int] = Field(default=None, alias="storageLimit", gt=0)
    is_active: bool = Field(default=True, alias="isActive")


class UpdateAccountRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    capacity_bytes: Optional[int] = Field(default=None, alias="storageLimit")
    is_active: Optional[bool] = Field(default=None, alias="isActive")


@router.get("/usage")
def usage(session: Session = Depends(get_session), pool: StoragePool = Depends(get_pool)):
    """per account usage, limit and percent free"""
    return ok(pool.usage_report(session))


@router.post("", status_code=201)
def add_account(
    req: AddAccountRequest,
    session: Session = Depends(get_session),
    registry: AccountRegistry = Depends(get_registry),
):
    if req.credentials is None and not req.credentials_path:
        raise InvalidRequest("either credentials or credentialsPath is required")
    credentials = req.credentials if req.credentials is not None else accounts.load_credentials_file(req.credentials_path)
    account = accounts.add_account(
        session,
        registry,
        name=req.name,
        credentials=credentials,
        capacity_bytes=req.capacity_bytes,
        is_active=req.is_active,
    )
    return ok(accounts.account_to_dict(account, registry))


@router.patch("/{account_id}")
def update_account(
    account_id: UUID,
    req: UpdateAccountRequest,
    session: Session = Depends(get_session),
    registry: AccountRegistry = Depends(get_registry),
):
    account = accounts.update_account(
        session,
        registry,
        account_id,
        name=req.name,
        capacity_bytes=req.capacity_bytes,
        is_active=req.is_active,
    )
    return ok(accounts.account_to_dict(account, registry))


@router.delete("/{account_id}")
def delete_account(
    account_id: UUID,
    session: Session = Depends(get_session),
    registry: AccountRegistry = Depends(get_registry),
):
    """only accounts that no longer hold any blob can be removed"""
    accounts.delete_account(session, registry, account_id)
    return ok({"id": str(account_id), "deleted": True})


@router.post("/refresh-usage")
def refresh_usage(session: Session = Depends(get_session), pool: StoragePool = Depends(get_pool)):
    """pull quota reports from drive now instead of waiting for the reconciler"""
    return ok(pool.reconcile_usage(session))


@router.post("/reload")
def reload_accounts(session: Session = Depends(get_session), registry: AccountRegistry = Depends(get_registry)):
    loaded = registry.reload(session)
    return ok({"loaded": loaded})
