from sqlmodel import Session, select
from streamvault.core.config import settings
from streamvault.core.db import engine
from streamvault.core.errors import ConversionFailed, JobNotFound, StreamVaultException
from streamvault.models import Asset, ConversionJob, JobStatus, Segment
from streamvault.services import conversion_jobs
from streamvault.services.progress import ProgressChannel, ProgressUpdater
from streamvault.services.storage_pool import StoragePool, storage_pool
from streamvault.services.stream import ManifestCache, manifest_cache
from streamvault.services.transcoder import HlsTranscoder, ResolutionProfile
from datetime import datetime
from typing import Callable
from uuid import UUID
import logging
import os
import shutil

logger = logging.getLogger(__name__)


class ConversionRunner:
    """executes one ConversionJob end to end inside a worker"""

    def __init__(
        self,
        pool: StoragePool,
        transcoder: HlsTranscoder,
        manifests: ManifestCache,
        work_dir: str = settings.TRANSCODE_DIR,
        session_factory: Callable[[], Session] = lambda: Session(engine),
        progress_step: int = settings.PROGRESS_STEP_PERCENT,
    ):
        self.pool = pool
        self.transcoder = transcoder
        self.manifests = manifests
        self.work_dir = work_dir
        self.session_factory = session_factory
        self.progress_step = progress_step

    def _persist_progress(self, job_id: UUID) -> Callable[[int], None]:
        # runs on the updater thread, which needs its own session
        def persist(percent: int) -> None:
            with self.session_factory() as session:
                conversion_jobs.update_progress(session, job_id, percent)
        return persist

    def _clear_segments(self, session: Session, job: ConversionJob) -> None:
        """drop segments left behind by an earlier attempt of this job"""
        stale = session.exec(
            select(Segment).where(Segment.asset_id == job.asset_id, Segment.resolution == job.resolution)
        ).all()
        if not stale:
            return
        logger.info(f"removing {len(stale)} stale {job.resolution} segments for asset {job.asset_id}")
        for segment in stale:
            self.pool.delete(segment.blob)
            session.delete(segment)
        session.commit()
        self.manifests.invalidate(job.asset_id, job.resolution)

    def run(self, session: Session, job_id: UUID) -> ConversionJob:
        job = session.get(ConversionJob, job_id)
        if job is None:
            raise JobNotFound(f"conversion job {job_id} not found")
        if job.status in JobStatus.TERMINAL:
            # redelivered after it already finished
            logger.info(f"conversion {job_id} is already {job.status}, skipping")
            return job

        asset = session.get(Asset, job.asset_id)
        if asset is None or asset.primary_blob is None:
            message = f"asset {job.asset_id} has no stored source"
            conversion_jobs.fail_job(session, job, message)
            raise ConversionFailed(message)

        conversion_jobs.start_job(session, job)
        logger.info(f"converting asset {asset.id} to {job.resolution} (attempt {job.attempts})")

        work = os.path.join(self.work_dir, str(job.id))
        shutil.rmtree(work, ignore_errors=True)
        hls_dir = os.path.join(work, "hls")
        os.makedirs(hls_dir, exist_ok=True)

        try:
            source = os.path.join(work, "source" + (os.path.splitext(asset.name)[1] or ".mp4"))
            served = self.pool.get(session, asset.primary_blob, source)
            if served != asset.primary_blob:
                asset.account_id = served.account_id
                asset.updated_at = datetime.utcnow()
                session.add(asset)
                session.commit()

            self._clear_segments(session, job)

            profile = ResolutionProfile(job.resolution, job.width, job.height, job.video_bitrate, job.audio_bitrate)
            channel = ProgressChannel()
            updater = ProgressUpdater(self._persist_progress(job.id), step=self.progress_step)
            updater_thread = updater.start(channel)
            try:
                outputs = self.transcoder.transcode(source, hls_dir, profile, channel)
            finally:
                channel.close()
                updater_thread.join()

            if not outputs:
                raise ConversionFailed(f"no segments produced for {job.resolution}")

            for index, (path, duration) in enumerate(outputs):
                blob = self.pool.put(session, path, "video/mp2t", f"{asset.id}_{job.resolution}_{index:05d}.ts")
                session.add(Segment(
                    asset_id=asset.id,
                    resolution=job.resolution,
                    index=index,
                    duration=duration,
                    account_id=blob.account_id,
                    remote_id=blob.remote_id,
                ))
                session.commit()

            session.refresh(job)
            conversion_jobs.complete_job(session, job)
            self.manifests.invalidate(asset.id, job.resolution)
            logger.info(f"conversion {job.id} ready: {len(outputs)} {job.resolution} segments")
            return job
        except Exception as e:
            session.rollback()
            message = e.message if isinstance(e, StreamVaultException) else str(e)
            job = session.get(ConversionJob, job_id)
            conversion_jobs.fail_job(session, job, message)
            logger.error(f"conversion {job_id} failed: {message}")
            if isinstance(e, StreamVaultException):
                raise
            raise ConversionFailed(message) from e
        finally:
            shutil.rmtree(work, ignore_errors=True)


# singleton instance
conversion_runner = ConversionRunner(storage_pool, HlsTranscoder(), manifest_cache)
