from redis import Redis
from rq import Queue
from streamvault.core.config import settings
from uuid import UUID
import logging

logger = logging.getLogger(__name__)

redis_conn = Redis.from_url(settings.REDIS_URL)
conversion_queue = Queue("conversions", connection=redis_conn)
preview_queue = Queue("previews", connection=redis_conn)

# referenced by dotted path so the api process never imports ffmpeg/worker code
RUN_CONVERSION = "streamvault.worker.run_conversion"
GENERATE_PREVIEW = "streamvault.worker.generate_preview"


def enqueue_job(func, *args, queue: Queue = conversion_queue, **kwargs):
    """enqueue a job on the given rq queue"""
    rq_job = queue.enqueue(func, *args, **kwargs)
    logger.info(f"queued {func if isinstance(func, str) else func.__name__} as {rq_job.id} on {queue.name}")
    return rq_job


def enqueue_conversion(conversion_job_id: UUID) -> str:
    """queue one (asset, resolution) conversion, returns the rq job id"""
    rq_job = enqueue_job(
        RUN_CONVERSION,
        str(conversion_job_id),
        queue=conversion_queue,
        job_timeout=settings.CONVERSION_TIMEOUT,
    )
    return rq_job.id


def enqueue_preview(asset_id: UUID) -> str:
    rq_job = enqueue_job(GENERATE_PREVIEW, str(asset_id), queue=preview_queue, job_timeout="30m")
    return rq_job.id
