"""
streaming reconstruction

manifests are rendered from Segment rows of ready conversions only, so a
client never sees a half written rendition. segment bytes are pulled from the
pool on first request and kept on local disk for SEGMENT_CACHE_TTL_SECONDS.
"""
from sqlmodel import Session, select
from streamvault.core.config import settings
from streamvault.core.errors import AssetNotFound, NoSegments, SegmentNotFound
from streamvault.models import Asset, BlobRef, CacheEntry, ConversionJob, JobStatus, Segment
from streamvault.services.storage_pool import StoragePool, storage_pool
from contextlib import contextmanager
from datetime import datetime
from math import ceil
from typing import Callable, Dict, List, Optional, Tuple
from uuid import UUID, uuid4
import logging
import os
import re
import threading
import time

logger = logging.getLogger(__name__)

MANIFEST_MEDIA_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_MEDIA_TYPE = "video/mp2t"


def render_media_playlist(segments: List[Segment], segment_path: str = settings.STREAM_SEGMENT_PATH) -> str:
    target = ceil(max(segment.duration for segment in segments))
    lines = [
        "#EXTM3U",
        "#EXT-X-VERSION:3",
        f"#EXT-X-TARGETDURATION:{target}",
        "#EXT-X-MEDIA-SEQUENCE:0",
        "#EXT-X-PLAYLIST-TYPE:VOD",
    ]
    for segment in segments:
        lines.append(f"#EXTINF:{segment.duration:.6f},")
        lines.append(f"{segment_path}?segmentId={segment.id}")
    lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines) + "\n"


def render_master_playlist(asset_id: UUID, jobs: List[ConversionJob], manifest_path: str = settings.STREAM_MANIFEST_PATH) -> str:
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
    for job in jobs:
        bandwidth = (_kbps(job.video_bitrate) + _kbps(job.audio_bitrate)) * 1000
        lines.append(f"#EXT-X-STREAM-INF:BANDWIDTH={bandwidth},RESOLUTION={job.width}x{job.height}")
        lines.append(f"{manifest_path}/{asset_id}?resolution={job.resolution}")
    return "\n".join(lines) + "\n"


def _kbps(bitrate: str) -> int:
    try:
        return int(bitrate.lower().rstrip("k"))
    except ValueError:
        return 0


class ManifestCache:
    """
    rendered media playlists keyed by (asset_id, resolution)

    every entry remembers the fingerprint of the ready job it was rendered
    from; a lookup with a different fingerprint (re-conversion finished in
    another worker) is a miss
    """

    def __init__(self, ttl_seconds: float = settings.MANIFEST_CACHE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: Dict[Tuple[str, str], Tuple[str, str, float]] = {}
        self._lock = threading.Lock()

    def get(self, asset_id: UUID, resolution: str, fingerprint: str) -> Optional[str]:
        key = (str(asset_id), resolution)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            text, stored_fingerprint, stored_at = entry
            if stored_fingerprint != fingerprint or self.clock() - stored_at > self.ttl_seconds:
                del self._entries[key]
                return None
            return text

    def put(self, asset_id: UUID, resolution: str, fingerprint: str, text: str) -> None:
        with self._lock:
            self._entries[(str(asset_id), resolution)] = (text, fingerprint, self.clock())

    def invalidate(self, asset_id: UUID, resolution: Optional[str] = None) -> None:
        with self._lock:
            if resolution is not None:
                self._entries.pop((str(asset_id), resolution), None)
                return
            for key in [k for k in self._entries if k[0] == str(asset_id)]:
                del self._entries[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SegmentCache:
    """
    local disk cache of segment bytes, one file per remote id

    freshness is the file mtime. concurrent requests for the same remote id
    share one download (per-key lock) and a reader never sees a partial file
    because downloads land in a temp name and are renamed into place.
    """

    def __init__(
        self,
        pool: StoragePool,
        cache_dir: str = settings.SEGMENT_CACHE_DIR,
        ttl_seconds: float = settings.SEGMENT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.pool = pool
        self.cache_dir = cache_dir
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        # remote id -> [lock, holders]
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    def path_for(self, remote_id: str) -> str:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", remote_id)
        return os.path.join(self.cache_dir, f"{safe}.ts")

    @contextmanager
    def _key_lock(self, remote_id: str):
        """per remote id lock, dropped again once nobody waits on it"""
        with self._locks_guard:
            entry = self._locks.get(remote_id)
            if entry is None:
                entry = self._locks[remote_id] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[remote_id]

    def entry(self, remote_id: str) -> Optional[CacheEntry]:
        """the cache entry for remote_id if it exists and is still fresh"""
        path = self.path_for(remote_id)
        try:
            mtime = os.path.getmtime(path)
        except OSError:
            return None
        if self.clock() - mtime > self.ttl_seconds:
            return None
        return CacheEntry(remote_id=remote_id, path=path, fetched_at=datetime.utcfromtimestamp(mtime))

    def fetch(self, session: Session, blob: BlobRef) -> str:
        """local path of the segment bytes, downloading at most once per ttl"""
        cached = self.entry(blob.remote_id)
        if cached is not None:
            return cached.path

        with self._key_lock(blob.remote_id):
            # another request may have filled it while we waited
            cached = self.entry(blob.remote_id)
            if cached is not None:
                return cached.path

            os.makedirs(self.cache_dir, exist_ok=True)
            path = self.path_for(blob.remote_id)
            tmp_path = f"{path}.{uuid4().hex}.part"
            try:
                self.pool.get(session, blob, tmp_path)
                os.replace(tmp_path, path)
            finally:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
            logger.debug(f"cached segment {blob.remote_id}")
            return path

    def purge_expired(self) -> int:
        """remove stale segment files, returns how many were removed"""
        if not os.path.isdir(self.cache_dir):
            return 0
        removed = 0
        now = self.clock()
        for name in os.listdir(self.cache_dir):
            path = os.path.join(self.cache_dir, name)
            try:
                if not os.path.isfile(path) or now - os.path.getmtime(path) <= self.ttl_seconds:
                    continue
                os.remove(path)
                removed += 1
            except OSError as e:
                logger.warning(f"could not purge {path}: {e}")
        if removed:
            logger.info(f"purged {removed} expired segments from cache")
        return removed


class StreamService:
    def __init__(
        self,
        segment_cache: SegmentCache,
        manifest_cache: ManifestCache,
        segment_path: str = settings.STREAM_SEGMENT_PATH,
        manifest_path: str = settings.STREAM_MANIFEST_PATH,
    ):
        self.segment_cache = segment_cache
        self.manifest_cache = manifest_cache
        self.segment_path = segment_path
        self.manifest_path = manifest_path

    def _ready_jobs(self, session: Session, asset_id: UUID) -> Dict[str, ConversionJob]:
        if session.get(Asset, asset_id) is None:
            raise AssetNotFound(f"asset {asset_id} not found")
        jobs = session.exec(
            select(ConversionJob).where(
                ConversionJob.asset_id == asset_id,
                ConversionJob.status == JobStatus.READY,
            )
        ).all()
        return {job.resolution: job for job in jobs}

    def _default_resolution(self, session: Session, asset_id: UUID, ready: Dict[str, ConversionJob]) -> str:
        # the rendition whose first segment landed first
        first = session.exec(
            select(Segment)
            .where(
                Segment.asset_id == asset_id,
                Segment.index == 0,
                Segment.resolution.in_(list(ready)),
            )
            .order_by(Segment.created_at, Segment.resolution)
        ).first()
        if first is not None:
            return first.resolution
        return sorted(ready)[0]

    def build_manifest(self, session: Session, asset_id: UUID, resolution: Optional[str] = None) -> str:
        ready = self._ready_jobs(session, asset_id)
        if not ready:
            raise NoSegments(f"asset {asset_id} has no ready conversions")
        if resolution is None:
            resolution = self._default_resolution(session, asset_id, ready)
        elif resolution not in ready:
            raise NoSegments(f"asset {asset_id} has no ready {resolution} conversion")

        job = ready[resolution]
        fingerprint = f"{job.id}:{job.completed_at.isoformat() if job.completed_at else ''}"
        cached = self.manifest_cache.get(asset_id, resolution, fingerprint)
        if cached is not None:
            return cached

        segments = session.exec(
            select(Segment)
            .where(Segment.asset_id == asset_id, Segment.resolution == resolution)
            .order_by(Segment.index)
        ).all()
        if not segments:
            raise NoSegments(f"asset {asset_id} has no {resolution} segments")
        indices = [segment.index for segment in segments]
        if indices != list(range(len(segments))):
            logger.error(f"segment indices for {asset_id}/{resolution} are not contiguous: {indices}")
            raise NoSegments(f"asset {asset_id} has an incomplete {resolution} rendition")

        text = render_media_playlist(segments, self.segment_path)
        self.manifest_cache.put(asset_id, resolution, fingerprint, text)
        return text

    def build_master_manifest(self, session: Session, asset_id: UUID) -> str:
        ready = self._ready_jobs(session, asset_id)
        if not ready:
            raise NoSegments(f"asset {asset_id} has no ready conversions")
        jobs = sorted(ready.values(), key=lambda job: (-job.height, job.resolution))
        return render_master_playlist(asset_id, jobs, self.manifest_path)

    def fetch_segment(self, session: Session, segment_id: UUID) -> str:
        segment = session.get(Segment, segment_id)
        if segment is None:
            raise SegmentNotFound(f"segment {segment_id} not found")
        return self.segment_cache.fetch(session, segment.blob)


# singleton instances
manifest_cache = ManifestCache()
segment_cache = SegmentCache(storage_pool)
stream_service = StreamService(segment_cache, manifest_cache)
