from dataclasses import dataclass
from datetime import datetime
from uuid import UUID


@dataclass(frozen=True)
class BlobRef:
    """tagged (account, remote id) pair for one object stored on drive"""
    account_id: UUID
    remote_id: str

    def as_dict(self) -> dict:
        return {"accountId": str(self.account_id), "remoteId": self.remote_id}


@dataclass(frozen=True)
class CacheEntry:
    """local copy of a remote blob, never persisted to the metadata store"""
    remote_id: str
    path: str
    fetched_at: datetime
