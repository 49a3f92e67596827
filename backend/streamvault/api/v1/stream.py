from fastapi import APIRouter, Depends, Query
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, RedirectResponse
from sqlmodel import Session
from streamvault.api.deps import get_stream_service
from streamvault.api.envelope import ok
from streamvault.core.db import get_session
from streamvault.core.errors import AssetNotFound, NoSegments
from streamvault.models import Asset, JobStatus
from streamvault.services import conversion_jobs
from streamvault.services.drive import public_url
from streamvault.services.stream import MANIFEST_MEDIA_TYPE, SEGMENT_MEDIA_TYPE, StreamService
from typing import Optional
from uuid import UUID

router = APIRouter()


def _pending_or_raise(session: Session, asset_id: UUID, error: NoSegments):
    """while conversions are still running answer 202 with their status"""
    aggregate = conversion_jobs.aggregate_status(session, asset_id)
    if aggregate["status"] in JobStatus.ACTIVE:
        return JSONResponse(status_code=202, content=ok(aggregate))
    raise error


@router.get("/manifest/{asset_id}/master")
def master_manifest(
    asset_id: UUID,
    session: Session = Depends(get_session),
    streams: StreamService = Depends(get_stream_service),
):
    try:
        text = streams.build_master_manifest(session, asset_id)
    except NoSegments as e:
        return _pending_or_raise(session, asset_id, e)
    return PlainTextResponse(text, media_type=MANIFEST_MEDIA_TYPE)


@router.get("/manifest/{asset_id}")
def manifest(
    asset_id: UUID,
    resolution: Optional[str] = None,
    session: Session = Depends(get_session),
    streams: StreamService = Depends(get_stream_service),
):
    """HLS media playlist for one ready rendition"""
    try:
        text = streams.build_manifest(session, asset_id, resolution)
    except NoSegments as e:
        return _pending_or_raise(session, asset_id, e)
    return PlainTextResponse(text, media_type=MANIFEST_MEDIA_TYPE)


@router.get("/segment")
def segment(
    segment_id: UUID = Query(..., alias="segmentId"),
    session: Session = Depends(get_session),
    streams: StreamService = Depends(get_stream_service),
):
    path = streams.fetch_segment(session, segment_id)
    return FileResponse(path, media_type=SEGMENT_MEDIA_TYPE)


@router.get("/preview/{asset_id}")
def preview(asset_id: UUID, session: Session = Depends(get_session)):
    """where to fetch the asset's preview image, images fall back to themselves"""
    asset = session.get(Asset, asset_id)
    if asset is None:
        raise AssetNotFound(f"asset {asset_id} not found")

    blob = asset.thumbnail_blob
    if blob is None and asset.media_type.startswith("image/"):
        blob = asset.primary_blob
    return ok({
        "assetId": str(asset.id),
        "preview": blob.as_dict() if blob else None,
    })


@router.get("/download/{asset_id}")
def download(asset_id: UUID, session: Session = Depends(get_session)):
    """redirect to the public drive link of the original file"""
    asset = session.get(Asset, asset_id)
    if asset is None:
        raise AssetNotFound(f"asset {asset_id} not found")
    if asset.primary_blob is None:
        raise AssetNotFound(f"asset {asset_id} has no stored file yet")
    return RedirectResponse(public_url(asset.remote_id), status_code=302)
