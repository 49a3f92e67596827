"""
conversion job state machine

    waiting -> processing -> ready
                          -> failed -> waiting   (explicit retry only)

there is at most one ConversionJob row per (asset, resolution); a retry
reuses the row. asset status is rolled up from its jobs after every
terminal transition.
"""
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select
from streamvault.core.errors import AssetNotFound, InvalidRequest, JobNotFound
from streamvault.models import Asset, AssetStatus, ConversionJob, JobStatus
from streamvault.services import queue as job_queue
from streamvault.services.transcoder import ResolutionProfile, get_profile
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from uuid import UUID
import logging
import threading

logger = logging.getLogger(__name__)

# error text kept on the job record
MAX_ERROR_LENGTH = 4000

_create_lock = threading.Lock()


def job_to_dict(job: ConversionJob) -> dict:
    return {
        "jobId": str(job.id),
        "assetId": str(job.asset_id),
        "resolution": job.resolution,
        "status": job.status,
        "progress": job.progress_percent,
        "attempts": job.attempts,
        "error": job.error_message,
        "startedAt": job.started_at.isoformat() if job.started_at else None,
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
        "createdAt": job.created_at.isoformat() if job.created_at else None,
    }


def get_job(session: Session, job_id: UUID) -> ConversionJob:
    job = session.get(ConversionJob, job_id)
    if job is None:
        raise JobNotFound(f"conversion job {job_id} not found")
    return job


def find_job(session: Session, asset_id: UUID, resolution: str) -> Optional[ConversionJob]:
    return session.exec(
        select(ConversionJob)
        .where(ConversionJob.asset_id == asset_id, ConversionJob.resolution == resolution)
        .order_by(ConversionJob.created_at.desc())
    ).first()


def jobs_for_asset(session: Session, asset_id: UUID) -> List[ConversionJob]:
    return session.exec(
        select(ConversionJob)
        .where(ConversionJob.asset_id == asset_id)
        .order_by(ConversionJob.created_at)
    ).all()


def _enqueue(session: Session, job: ConversionJob, enqueue: Optional[Callable[[UUID], str]]) -> None:
    enqueue = enqueue or job_queue.enqueue_conversion
    try:
        job.rq_job_id = enqueue(job.id)
    except Exception as e:
        logger.error(f"could not enqueue conversion {job.id}: {e}")
        fail_job(session, job, f"could not enqueue conversion: {e}")
        return
    job.updated_at = datetime.utcnow()
    session.add(job)
    session.commit()


def _create_missing(session: Session, asset: Asset, profiles: List[ResolutionProfile]) -> Tuple[List[dict], List[ConversionJob]]:
    """insert a waiting job for every profile that has no job row yet"""
    existing_results = []
    created = []
    for profile in profiles:
        existing = find_job(session, asset.id, profile.name)
        if existing is not None:
            if existing.is_active:
                message = "conversion already in progress"
            elif existing.status == JobStatus.READY:
                message = "already converted"
            else:
                message = "previous conversion failed, retry it explicitly"
            existing_results.append({**job_to_dict(existing), "created": False, "message": message})
            continue

        job = ConversionJob(
            asset_id=asset.id,
            resolution=profile.name,
            status=JobStatus.WAITING,
            width=profile.width,
            height=profile.height,
            video_bitrate=profile.video_bitrate,
            audio_bitrate=profile.audio_bitrate,
        )
        session.add(job)
        created.append(job)

    if created:
        asset.status = AssetStatus.PROCESSING
        asset.updated_at = datetime.utcnow()
        session.add(asset)
    session.commit()
    return existing_results, created


def request_conversion(
    session: Session,
    asset_id: UUID,
    resolutions: Iterable[str],
    enqueue: Optional[Callable[[UUID], str]] = None,
) -> List[dict]:
    """
    create and enqueue one job per requested resolution

    an active job for the same (asset, resolution) is reported instead of
    duplicated, a ready one is a no-op and a failed one is left alone until
    it is retried explicitly
    """
    asset = session.get(Asset, asset_id)
    if asset is None:
        raise AssetNotFound(f"asset {asset_id} not found")
    if not asset.is_video:
        raise InvalidRequest(f"asset {asset_id} is not a video ({asset.media_type})")
    if asset.primary_blob is None:
        raise InvalidRequest(f"asset {asset_id} has not finished uploading")

    requested = list(dict.fromkeys(resolutions))
    if not requested:
        raise InvalidRequest("at least one resolution is required")
    profiles = [get_profile(resolution) for resolution in requested]

    # check-then-insert must not interleave with another request in this process;
    # the unique (asset_id, resolution) index covers other processes
    with _create_lock:
        try:
            results, created = _create_missing(session, asset, profiles)
        except IntegrityError:
            session.rollback()
            logger.info(f"conversion for asset {asset_id} created concurrently, reporting the existing job")
            results, created = _create_missing(session, asset, profiles)

    for job in created:
        session.refresh(job)
        _enqueue(session, job, enqueue)
        logger.info(f"queued {job.resolution} conversion {job.id} for asset {asset.id}")
        results.append({**job_to_dict(job), "created": True, "message": "conversion queued"})

    return results


def retry_job(session: Session, job_id: UUID, enqueue: Optional[Callable[[UUID], str]] = None) -> ConversionJob:
    """operator action: failed -> waiting, progress reset, re-enqueued"""
    job = get_job(session, job_id)
    if job.status != JobStatus.FAILED:
        raise InvalidRequest(f"only failed jobs can be retried (job {job_id} is {job.status})")

    job.status = JobStatus.WAITING
    job.progress_percent = 0
    job.error_message = None
    job.started_at = None
    job.completed_at = None
    job.updated_at = datetime.utcnow()
    session.add(job)

    asset = session.get(Asset, job.asset_id)
    if asset is not None:
        asset.status = AssetStatus.PROCESSING
        asset.updated_at = datetime.utcnow()
        session.add(asset)
    session.commit()
    session.refresh(job)

    _enqueue(session, job, enqueue)
    logger.info(f"retrying {job.resolution} conversion {job.id}")
    return job


def start_job(session: Session, job: ConversionJob) -> ConversionJob:
    """mark a job as processing"""
    job.status = JobStatus.PROCESSING
    job.progress_percent = 0
    job.attempts += 1
    job.error_message = None
    job.started_at = datetime.utcnow()
    job.completed_at = None
    job.updated_at = datetime.utcnow()
    session.add(job)
    session.commit()
    session.refresh(job)
    return job


def update_progress(session: Session, job_id: UUID, progress_percent: int) -> None:
    """progress only moves forward and only while processing"""
    progress_percent = max(0, min(100, int(progress_percent)))
    session.execute(
        update(ConversionJob)
        .where(
            ConversionJob.id == job_id,
            ConversionJob.status == JobStatus.PROCESSING,
            ConversionJob.progress_percent < progress_percent,
        )
        .values(progress_percent=progress_percent, updated_at=datetime.utcnow())
    )
    session.commit()


def complete_job(session: Session, job: ConversionJob) -> ConversionJob:
    """mark a job as ready"""
    job.status = JobStatus.READY
    job.progress_percent = 100
    job.error_message = None
    job.completed_at = datetime.utcnow()
    job.updated_at = datetime.utcnow()
    session.add(job)
    session.commit()
    refresh_asset_status(session, job.asset_id)
    session.refresh(job)
    return job


def fail_job(session: Session, job: ConversionJob, error_message: str) -> ConversionJob:
    """mark a job as failed, the error text is kept verbatim (tail if huge)"""
    job.status = JobStatus.FAILED
    job.error_message = (error_message or "conversion failed")[-MAX_ERROR_LENGTH:]
    job.completed_at = datetime.utcnow()
    job.updated_at = datetime.utcnow()
    session.add(job)
    session.commit()
    refresh_asset_status(session, job.asset_id)
    session.refresh(job)
    return job


def refresh_asset_status(session: Session, asset_id: UUID) -> Optional[str]:
    """
    roll the asset status up from its jobs: while any job is active the
    asset stays processing, afterwards it is ready if at least one
    resolution converted and failed otherwise
    """
    asset = session.get(Asset, asset_id)
    if asset is None:
        return None
    jobs = jobs_for_asset(session, asset_id)
    if not jobs or any(job.is_active for job in jobs):
        return asset.status

    if any(job.status == JobStatus.READY for job in jobs):
        asset.status = AssetStatus.READY
        asset.error_message = None
    else:
        asset.status = AssetStatus.FAILED
        asset.error_message = "all conversions failed"
    asset.updated_at = datetime.utcnow()
    session.add(asset)
    session.commit()
    return asset.status


def aggregate_status(session: Session, asset_id: UUID) -> dict:
    """one status for all of an asset's conversions"""
    jobs = jobs_for_asset(session, asset_id)
    if not jobs:
        return {"assetId": str(asset_id), "status": "none", "progress": 0, "resolutions": [], "jobs": []}

    statuses = [job.status for job in jobs]
    if JobStatus.PROCESSING in statuses:
        status = JobStatus.PROCESSING
    elif JobStatus.WAITING in statuses:
        status = JobStatus.WAITING
    elif JobStatus.READY in statuses:
        status = JobStatus.READY
    else:
        status = JobStatus.FAILED

    return {
        "assetId": str(asset_id),
        "status": status,
        "progress": round(sum(job.progress_percent for job in jobs) / len(jobs)),
        "resolutions": [job.resolution for job in jobs if job.status == JobStatus.READY],
        "jobs": [job_to_dict(job) for job in jobs],
    }


def list_jobs(session: Session, status: Optional[str] = None, limit: int = 50) -> List[ConversionJob]:
    query = select(ConversionJob).order_by(ConversionJob.created_at.desc()).limit(limit)
    if status:
        query = query.where(ConversionJob.status == status)
    return session.exec(query).all()


def active_by_asset(session: Session) -> Dict[str, List[dict]]:
    jobs = session.exec(
        select(ConversionJob)
        .where(ConversionJob.status.in_(JobStatus.ACTIVE))
        .order_by(ConversionJob.created_at)
    ).all()
    grouped: Dict[str, List[dict]] = {}
    for job in jobs:
        grouped.setdefault(str(job.asset_id), []).append(job_to_dict(job))
    return grouped


def _rq_status(rq_job_id: str) -> Optional[str]:
    from rq.exceptions import NoSuchJobError
    from rq.job import Job

    try:
        return Job.fetch(rq_job_id, connection=job_queue.redis_conn).get_status()
    except NoSuchJobError:
        return None


def sync_lost_jobs(session: Session, fetch_status: Callable[[str], Optional[str]] = _rq_status) -> int:
    """
    fail processing jobs whose rq job is gone or failed without reaching
    fail_job (worker killed, timeout exceeded), returns how many were fixed
    """
    fixed = 0
    processing = session.exec(
        select(ConversionJob).where(ConversionJob.status == JobStatus.PROCESSING)
    ).all()
    for job in processing:
        if not job.rq_job_id:
            continue
        rq_status = fetch_status(job.rq_job_id)
        if rq_status is None:
            fail_job(session, job, "job lost (not found in queue)")
        elif rq_status in ("failed", "stopped", "canceled"):
            fail_job(session, job, "worker killed or job timeout exceeded")
        else:
            continue
        logger.warning(f"synced lost conversion {job.id} (rq {job.rq_job_id}: {rq_status})")
        fixed += 1
    return fixed
