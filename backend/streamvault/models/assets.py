from datetime import datetime
from uuid import UUID, uuid4
from sqlmodel import SQLModel, Field
from sqlalchemy import BigInteger, Column, JSON
from typing import Optional
from .blobs import BlobRef

ASSET_CATEGORIES = ("video", "image", "document", "archive")

class AssetStatus:
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"

class Asset(SQLModel, table=True):
    __tablename__ = "assets"
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    identifier: str = Field(unique=True, index=True)  # upload id handed to the client
    name: str
    category: str = Field(index=True)  # video, image, document, archive
    size_bytes: int = Field(sa_column=Column(BigInteger, nullable=False))
    media_type: str
    status: str = Field(default=AssetStatus.PROCESSING, index=True)  # processing, ready, failed
    source: str = Field(default="upload")  # upload, import
    folder_tag: Optional[str] = Field(default=None, nullable=True, index=True)

    # primary blob, set once the upload completes
    account_id: Optional[UUID] = Field(default=None, foreign_key="storage_accounts.id", nullable=True)
    remote_id: Optional[str] = Field(default=None, nullable=True, index=True)

    thumbnail_account_id: Optional[UUID] = Field(default=None, foreign_key="storage_accounts.id", nullable=True)
    thumbnail_remote_id: Optional[str] = Field(default=None, nullable=True)

    error_message: Optional[str] = Field(default=None, nullable=True)
    # provider specific leftovers only (e.g. drive file metadata on import)
    extra: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def primary_blob(self) -> Optional[BlobRef]:
        if self.account_id is None or not self.remote_id:
            return None
        return BlobRef(self.account_id, self.remote_id)

    @property
    def thumbnail_blob(self) -> Optional[BlobRef]:
        if self.thumbnail_account_id is None or not self.thumbnail_remote_id:
            return None
        return BlobRef(self.thumbnail_account_id, self.thumbnail_remote_id)

    @property
    def is_video(self) -> bool:
        return self.media_type.startswith("video/")
