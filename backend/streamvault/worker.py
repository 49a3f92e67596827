from sqlmodel import Session
from streamvault.core.config import settings
from streamvault.core.db import engine
from streamvault.core.errors import handle_worker_error
from streamvault.core.logging_config import configure_logging
from streamvault.services.conversion_runner import conversion_runner
from streamvault.services.previews import preview_generator
from streamvault.services.storage_pool import storage_pool
from streamvault.services.stream import segment_cache
from rq import get_current_job
from typing import Optional
from uuid import UUID
import logging
import time

logger = logging.getLogger(__name__)


def run_conversion(conversion_job_id):
    """rq entry point: transcode one (asset, resolution) job to HLS"""
    current_job = get_current_job()
    rq_job_id = current_job.id if current_job else "inline"
    logger.info(f"[{rq_job_id}] starting conversion {conversion_job_id}")

    with Session(engine) as session:
        try:
            job = conversion_runner.run(session, UUID(str(conversion_job_id)))
        except Exception as e:
            handle_worker_error(rq_job_id, e)
            raise
    return {"jobId": str(job.id), "status": job.status}


def generate_preview(asset_id):
    """rq entry point: thumbnail / preview for a freshly stored asset"""
    current_job = get_current_job()
    rq_job_id = current_job.id if current_job else "inline"

    with Session(engine) as session:
        try:
            blob = preview_generator.generate(session, UUID(str(asset_id)))
        except Exception as e:
            handle_worker_error(rq_job_id, e)
            raise
    return blob.as_dict()


def usage_reconciler_poller(interval: Optional[int] = None, iterations: Optional[int] = None, sleep=time.sleep):
    """
    overwrite advisory used_bytes with drive's quota report and purge the
    segment cache every interval seconds; runs forever unless iterations is set
    """
    interval = interval or settings.USAGE_RECONCILE_INTERVAL_SECONDS
    logger.info(f"usage reconciler started, interval {interval}s")

    done = 0
    while iterations is None or done < iterations:
        try:
            with Session(engine) as session:
                results = storage_pool.reconcile_usage(session)
            failed = [r for r in results if not r["reconciled"]]
            logger.info(f"reconciled {len(results) - len(failed)}/{len(results)} storage accounts")
            segment_cache.purge_expired()
        except Exception as e:
            logger.error(f"usage reconcile pass failed: {e}", exc_info=True)
        done += 1
        if iterations is None or done < iterations:
            sleep(interval)


if __name__ == "__main__":
    from rq.worker_pool import WorkerPool
    from streamvault.services.queue import conversion_queue, preview_queue, redis_conn

    configure_logging()
    logger.info(
        f"starting {settings.CONVERSION_CONCURRENCY} rq workers on queues: "
        f"{conversion_queue.name}, {preview_queue.name}"
    )
    pool = WorkerPool([conversion_queue, preview_queue], connection=redis_conn, num_workers=settings.CONVERSION_CONCURRENCY)
    pool.start()
