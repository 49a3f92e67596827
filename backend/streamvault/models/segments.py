from datetime import datetime
from uuid import UUID, uuid4
from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint
from .blobs import BlobRef

class Segment(SQLModel, table=True):
    __tablename__ = "segments"
    __table_args__ = (
        UniqueConstraint("asset_id", "resolution", "index", name="uq_segments_asset_resolution_index"),
    )
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    asset_id: UUID = Field(foreign_key="assets.id", index=True)
    resolution: str = Field(index=True)
    index: int  # zero based, contiguous per (asset, resolution)
    duration: float
    account_id: UUID = Field(foreign_key="storage_accounts.id")
    remote_id: str
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def blob(self) -> BlobRef:
        return BlobRef(self.account_id, self.remote_id)
