from datetime import datetime
from uuid import UUID, uuid4
from sqlmodel import SQLModel, Field
from sqlalchemy import BigInteger, Column, JSON
from typing import Optional

class StorageAccount(SQLModel, table=True):
    __tablename__ = "storage_accounts"
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str
    email: str = Field(unique=True, index=True)
    # google service account key json
    credentials: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    capacity_bytes: int = Field(sa_column=Column(BigInteger, nullable=False))
    # advisory, corrected by reconcile_usage
    used_bytes: int = Field(default=0, sa_column=Column(BigInteger, nullable=False, default=0))
    is_active: bool = Field(default=True, index=True)
    last_reconciled_at: Optional[datetime] = Field(default=None, nullable=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def free_bytes(self) -> int:
        return self.capacity_bytes - self.used_bytes

    @property
    def free_fraction(self) -> float:
        if self.capacity_bytes <= 0:
            return 0.0
        return self.free_bytes / self.capacity_bytes
