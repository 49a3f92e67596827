from sqlalchemy import func, or_
from sqlmodel import Session, select
from streamvault.core.config import settings
from streamvault.core.errors import AccountInUse, AccountNotFound, InvalidRequest
from streamvault.models import Asset, Segment, StorageAccount
from streamvault.services.account_registry import AccountRegistry
from datetime import datetime
from typing import Optional
from uuid import UUID
import json
import logging

logger = logging.getLogger(__name__)

REQUIRED_CREDENTIAL_FIELDS = (
    "type", "project_id", "private_key_id", "private_key",
    "client_email", "client_id", "auth_uri", "token_uri",
    "auth_provider_x509_cert_url", "client_x509_cert_url",
)


def account_to_dict(account: StorageAccount, registry: Optional[AccountRegistry] = None) -> dict:
    """never exposes the credentials"""
    data = {
        "id": str(account.id),
        "name": account.name,
        "email": account.email,
        "limit": account.capacity_bytes,
        "usage": account.used_bytes,
        "isActive": account.is_active,
        "createdAt": account.created_at.isoformat() if account.created_at else None,
    }
    if registry is not None:
        data["loaded"] = registry.get(account.id) is not None
    return data


def load_credentials_file(path: str) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        raise InvalidRequest(f"failed to read or parse credentials file: {e}")


def validate_credentials(credentials: dict) -> None:
    if not isinstance(credentials, dict):
        raise InvalidRequest("credentials must be a service account key object")
    for field in REQUIRED_CREDENTIAL_FIELDS:
        if not credentials.get(field):
            raise InvalidRequest(f"missing required credential field: {field}")
    if credentials["type"] != "service_account":
        raise InvalidRequest("credentials are not a service account key")


def get_account(session: Session, account_id: UUID) -> StorageAccount:
    account = session.get(StorageAccount, account_id)
    if account is None:
        raise AccountNotFound(f"storage account {account_id} not found")
    return account


def _activate(registry: AccountRegistry, account: StorageAccount) -> None:
    try:
        registry.load_account(account)
    except Exception as e:
        raise InvalidRequest(f"could not load credentials for {account.email}: {e}")


def add_account(
    session: Session,
    registry: AccountRegistry,
    name: str,
    credentials: dict,
    capacity_bytes: Optional[int] = None,
    is_active: bool = True,
) -> StorageAccount:
    validate_credentials(credentials)
    email = credentials["client_email"]
    if session.exec(select(StorageAccount).where(StorageAccount.email == email)).first():
        raise InvalidRequest(f"storage account {email} already exists")

    account = StorageAccount(
        name=name,
        email=email,
        credentials=credentials,
        capacity_bytes=capacity_bytes or settings.DEFAULT_ACCOUNT_CAPACITY_BYTES,
        is_active=is_active,
    )
    if is_active:
        # fail before the row exists if the key cannot be used
        _activate(registry, account)
    session.add(account)
    session.commit()
    session.refresh(account)
    logger.info(f"added storage account {email} ({account.capacity_bytes} bytes)")
    return account


def update_account(
    session: Session,
    registry: AccountRegistry,
    account_id: UUID,
    name: Optional[str] = None,
    capacity_bytes: Optional[int] = None,
    is_active: Optional[bool] = None,
) -> StorageAccount:
    account = get_account(session, account_id)
    if name is not None:
        account.name = name
    if capacity_bytes is not None:
        if capacity_bytes <= 0:
            raise InvalidRequest("capacity must be positive")
        account.capacity_bytes = capacity_bytes
    if is_active is not None and is_active != account.is_active:
        if is_active:
            _activate(registry, account)
        else:
            registry.unregister(account.id)
        account.is_active = is_active
        logger.info(f"storage account {account.email} {'activated' if is_active else 'deactivated'}")

    account.updated_at = datetime.utcnow()
    session.add(account)
    session.commit()
    session.refresh(account)
    return account


def blob_references(session: Session, account_id: UUID) -> dict:
    """how many live blobs still point at the account"""
    assets = session.exec(
        select(func.count()).select_from(Asset).where(
            or_(Asset.account_id == account_id, Asset.thumbnail_account_id == account_id)
        )
    ).one()
    segments = session.exec(
        select(func.count()).select_from(Segment).where(Segment.account_id == account_id)
    ).one()
    return {"assets": assets, "segments": segments}


def delete_account(session: Session, registry: AccountRegistry, account_id: UUID) -> None:
    """remove an account that no longer holds anything; deactivate it first to drain writes"""
    account = get_account(session, account_id)
    references = blob_references(session, account.id)
    if references["assets"] or references["segments"]:
        raise AccountInUse(
            f"storage account {account.email} still holds {references['assets']} assets "
            f"and {references['segments']} segments"
        )

    registry.unregister(account.id)
    session.delete(account)
    session.commit()
    logger.info(f"deleted storage account {account.email}")
