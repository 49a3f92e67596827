from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlmodel import Session
from streamvault.api.envelope import ok
from streamvault.core.db import get_session
from streamvault.core.errors import AssetNotFound
from streamvault.models import Asset
from streamvault.services import conversion_jobs
from streamvault.services.transcoder import RESOLUTION_PROFILES
from typing import List, Optional
from uuid import UUID
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


class ConvertRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    asset_id: UUID = Field(alias="assetId")
    resolutions: List[str] = Field(default_factory=lambda: ["720p"], min_length=1)


class RetryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: UUID = Field(alias="jobId")


@router.post("/convert")
def convert(req: ConvertRequest, session: Session = Depends(get_session)):
    """queue HLS conversions for a stored video"""
    results = conversion_jobs.request_conversion(session, req.asset_id, req.resolutions)
    return ok({"assetId": str(req.asset_id), "jobs": results})


@router.post("/retry")
def retry(req: RetryRequest, session: Session = Depends(get_session)):
    """re-queue a failed conversion"""
    job = conversion_jobs.retry_job(session, req.job_id)
    return ok(conversion_jobs.job_to_dict(job))


@router.get("/status")
def job_status(job_id: UUID = Query(..., alias="jobId"), session: Session = Depends(get_session)):
    return ok(conversion_jobs.job_to_dict(conversion_jobs.get_job(session, job_id)))


@router.get("/by-asset")
def jobs_by_asset(asset_id: UUID = Query(..., alias="assetId"), session: Session = Depends(get_session)):
    """aggregate conversion status of one asset"""
    if session.get(Asset, asset_id) is None:
        raise AssetNotFound(f"asset {asset_id} not found")
    return ok(conversion_jobs.aggregate_status(session, asset_id))


@router.get("/profiles")
def profiles():
    return ok([
        {
            "resolution": p.name,
            "width": p.width,
            "height": p.height,
            "videoBitrate": p.video_bitrate,
            "audioBitrate": p.audio_bitrate,
        }
        for p in RESOLUTION_PROFILES.values()
    ])


@router.get("/active")
def active_jobs(session: Session = Depends(get_session)):
    """waiting and processing conversions grouped by asset"""
    return ok(conversion_jobs.active_by_asset(session))


@router.get("/")
def list_jobs(
    session: Session = Depends(get_session),
    status: Optional[str] = None,
    limit: int = Query(default=50, le=200),
):
    """conversion jobs, newest first, after syncing lost rq jobs"""
    try:
        conversion_jobs.sync_lost_jobs(session)
    except Exception as e:
        # redis being down must not hide the db state
        logger.warning(f"error syncing job statuses: {e}")
        session.rollback()

    jobs = conversion_jobs.list_jobs(session, status=status, limit=limit)
    return ok({"jobs": [conversion_jobs.job_to_dict(job) for job in jobs], "total": len(jobs)})
