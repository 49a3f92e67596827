import os

class Settings:
    PROJECT_NAME: str = "StreamVault"
    DATABASE_URL: str = os.getenv("DATABASE_URL", "postgresql://postgres:postgres@db:5432/streamvault")
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    # storage paths
    DATA_DIR: str = os.getenv("DATA_DIR", "/data")
    UPLOAD_SCRATCH_DIR: str = os.getenv("UPLOAD_SCRATCH_DIR", os.path.join(DATA_DIR, "uploads_temp"))
    TRANSCODE_DIR: str = os.getenv("TRANSCODE_DIR", os.path.join(DATA_DIR, "transcode"))
    SEGMENT_CACHE_DIR: str = os.getenv("SEGMENT_CACHE_DIR", os.path.join(DATA_DIR, "segment_cache"))
    PREVIEW_DIR: str = os.getenv("PREVIEW_DIR", os.path.join(DATA_DIR, "previews"))
    LOG_DIR: str = os.getenv("LOG_DIR", "/var/log/streamvault")

    # storage pool policy (fractions of an account's capacity)
    RESERVE_MARGIN: float = float(os.getenv("RESERVE_MARGIN", "0.10"))
    COMFORT_MARGIN: float = float(os.getenv("COMFORT_MARGIN", "0.50"))
    DEFAULT_ACCOUNT_CAPACITY_BYTES: int = int(os.getenv("DEFAULT_ACCOUNT_CAPACITY_BYTES", str(15 * 1024 ** 3)))

    # google drive rate limit handling
    DRIVE_MAX_RETRIES: int = int(os.getenv("DRIVE_MAX_RETRIES", "5"))
    DRIVE_RETRY_BASE_DELAY: float = float(os.getenv("DRIVE_RETRY_BASE_DELAY", "1.0"))
    DRIVE_RETRY_MAX_DELAY: float = float(os.getenv("DRIVE_RETRY_MAX_DELAY", "32.0"))

    # uploads
    DEFAULT_CHUNK_SIZE: int = int(os.getenv("DEFAULT_CHUNK_SIZE", str(10 * 1024 * 1024)))
    # a completion claim older than this belongs to a request that died mid-store
    UPLOAD_CLAIM_TIMEOUT_SECONDS: int = int(os.getenv("UPLOAD_CLAIM_TIMEOUT_SECONDS", "3600"))

    # transcoding
    FFMPEG_BINARY: str = os.getenv("FFMPEG_BINARY", "ffmpeg")
    FFPROBE_BINARY: str = os.getenv("FFPROBE_BINARY", "ffprobe")
    HLS_SEGMENT_SECONDS: int = int(os.getenv("HLS_SEGMENT_SECONDS", "10"))
    PROGRESS_STEP_PERCENT: int = int(os.getenv("PROGRESS_STEP_PERCENT", "5"))
    PROGRESS_CHANNEL_SIZE: int = int(os.getenv("PROGRESS_CHANNEL_SIZE", "32"))
    CONVERSION_CONCURRENCY: int = int(os.getenv("CONVERSION_CONCURRENCY", "2"))
    CONVERSION_TIMEOUT: str = os.getenv("CONVERSION_TIMEOUT", "4h")

    # streaming
    SEGMENT_CACHE_TTL_SECONDS: int = int(os.getenv("SEGMENT_CACHE_TTL_SECONDS", str(7 * 24 * 3600)))
    MANIFEST_CACHE_TTL_SECONDS: int = int(os.getenv("MANIFEST_CACHE_TTL_SECONDS", str(24 * 3600)))
    STREAM_SEGMENT_PATH: str = os.getenv("STREAM_SEGMENT_PATH", "/stream/segment")
    STREAM_MANIFEST_PATH: str = os.getenv("STREAM_MANIFEST_PATH", "/stream/manifest")

    # usage reconciliation against drive quota reports
    USAGE_RECONCILE_INTERVAL_SECONDS: int = int(os.getenv("USAGE_RECONCILE_INTERVAL_SECONDS", "600"))

settings = Settings()
