from datetime import datetime
from uuid import UUID, uuid4
from sqlmodel import SQLModel, Field
from sqlalchemy import Index
from typing import Optional

class JobStatus:
    WAITING = "waiting"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"

    ACTIVE = (WAITING, PROCESSING)
    TERMINAL = (READY, FAILED)

class ConversionJob(SQLModel, table=True):
    __tablename__ = "conversion_jobs"
    # one job row per (asset, resolution), retries reuse it
    __table_args__ = (
        Index("ix_conversion_jobs_asset_resolution", "asset_id", "resolution", unique=True),
    )
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    asset_id: UUID = Field(foreign_key="assets.id", index=True)
    resolution: str
    status: str = Field(default=JobStatus.WAITING, index=True)  # waiting, processing, ready, failed
    progress_percent: int = Field(default=0)

    # encode options
    width: int
    height: int
    video_bitrate: str
    audio_bitrate: str

    rq_job_id: Optional[str] = Field(default=None, nullable=True, index=True)
    attempts: int = Field(default=0)
    error_message: Optional[str] = Field(default=None, nullable=True)
    started_at: Optional[datetime] = Field(default=None, nullable=True)
    completed_at: Optional[datetime] = Field(default=None, nullable=True)
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in JobStatus.ACTIVE
