import logging
import random
import time
from functools import wraps
from typing import Callable, Any, Iterable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


class StreamVaultException(Exception):
    """base exception for streamvault-specific errors"""
    status_code: int = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class InvalidRequest(StreamVaultException):
    """raised when a request is well-formed but semantically invalid"""
    status_code = 400


class AssetNotFound(StreamVaultException):
    status_code = 404


class UploadNotFound(StreamVaultException):
    status_code = 404


class JobNotFound(StreamVaultException):
    status_code = 404


class SegmentNotFound(StreamVaultException):
    status_code = 404


class AccountNotFound(StreamVaultException):
    status_code = 404


class AccountInUse(StreamVaultException):
    """raised when deleting a storage account that still holds blobs"""
    status_code = 409


class PoolExhausted(StreamVaultException):
    """raised when no storage account clears the reserve margin"""
    status_code = 507


class DriveError(StreamVaultException):
    """raised when a drive api call fails for a non rate-limit reason"""
    status_code = 502


class RateLimited(DriveError):
    """raised when drive reports a rate limit, always retried with backoff"""
    status_code = 429


class UploadFailed(StreamVaultException):
    """raised when an upload could not be completed after the retry budget"""
    status_code = 502


class DownloadFailed(StreamVaultException):
    """raised when a download could not be completed after the retry budget"""
    status_code = 502


class BlobNotFound(StreamVaultException):
    """raised when no active account can resolve a remote id"""
    status_code = 404


class IncompleteUpload(StreamVaultException):
    """raised when a chunked upload is completed with missing chunks"""
    status_code = 400

    def __init__(self, message: str = "", missing: Optional[Iterable[int]] = None):
        super().__init__(message)
        self.missing = sorted(missing or [])


class ConversionFailed(StreamVaultException):
    """raised when the transcoding subprocess fails"""
    status_code = 500


class NoSegments(StreamVaultException):
    """raised when a manifest is requested before any successful conversion"""
    status_code = 404


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    max_delay: float = 60.0,
    retry_on: Tuple[Type[BaseException], ...] = (RateLimited,),
    jitter: bool = True,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    decorator to retry a function with exponential backoff

    only exceptions listed in retry_on are retried, anything else propagates
    on the first attempt. the last exception is re-raised once max_retries
    attempts have been used.

    usage:
        @retry_with_backoff(max_retries=5, initial_delay=2.0)
        def upload_to_drive(file_path):
            # ... code that might be rate limited ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            delay = initial_delay
            last_exception = None

            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    last_exception = e
                    if attempt < max_retries - 1:
                        wait = min(delay, max_delay)
                        if jitter:
                            wait = random.uniform(wait / 2, wait)
                        logger.warning(
                            f"{func.__name__} failed (attempt {attempt + 1}/{max_retries}): {str(e)}. "
                            f"retrying in {wait:.2f}s..."
                        )
                        sleep(wait)
                        delay *= backoff_factor
                    else:
                        logger.error(
                            f"{func.__name__} failed after {max_retries} attempts: {str(e)}"
                        )

            # all retries exhausted
            raise last_exception

        return wrapper
    return decorator


def handle_worker_error(job_id: str, error: Exception):
    """
    centralized error handler for worker jobs
    the job record already holds the error text, this only logs it
    """
    logger.error(f"job {job_id} failed: {error}", exc_info=True)
