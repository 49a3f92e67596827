import os
import threading
import time
from datetime import datetime, timedelta

import pytest

from streamvault.core.errors import DownloadFailed, DriveError, NoSegments, SegmentNotFound
from streamvault.models import ConversionJob, JobStatus, Segment
from streamvault.services.stream import ManifestCache, SegmentCache, StreamService
from streamvault.services.transcoder import get_profile


class Clock:
    def __init__(self, now=None):
        self.now = now if now is not None else time.time()

    def __call__(self):
        return self.now


@pytest.fixture(name="clock")
def clock_fixture():
    return Clock()


@pytest.fixture(name="segment_cache")
def segment_cache_fixture(pool, tmp_path, clock):
    return SegmentCache(pool, cache_dir=str(tmp_path / "cache"), ttl_seconds=7 * 24 * 3600, clock=clock)


@pytest.fixture(name="streams")
def streams_fixture(segment_cache):
    return StreamService(segment_cache, ManifestCache(), segment_path="/stream/segment", manifest_path="/stream/manifest")


def _rendition(session, pool, asset, tmp_path, resolution="720p", durations=(10.01, 9.976, 3.2),
               status=JobStatus.READY, first_written=None):
    profile = get_profile(resolution)
    job = ConversionJob(
        asset_id=asset.id,
        resolution=resolution,
        status=status,
        progress_percent=100 if status == JobStatus.READY else 40,
        width=profile.width,
        height=profile.height,
        video_bitrate=profile.video_bitrate,
        audio_bitrate=profile.audio_bitrate,
        completed_at=datetime.utcnow() if status == JobStatus.READY else None,
    )
    session.add(job)
    first_written = first_written or datetime.utcnow()
    segments = []
    for index, duration in enumerate(durations):
        path = tmp_path / f"{resolution}-{index}.ts"
        path.write_bytes(f"{resolution}:{index}".encode())
        blob = pool.put(session, str(path), "video/mp2t", path.name)
        segment = Segment(
            asset_id=asset.id,
            resolution=resolution,
            index=index,
            duration=duration,
            account_id=blob.account_id,
            remote_id=blob.remote_id,
            created_at=first_written + timedelta(seconds=index),
        )
        session.add(segment)
        segments.append(segment)
    session.commit()
    session.refresh(job)
    for segment in segments:
        session.refresh(segment)
    return job, segments


def test_manifest_lists_every_segment_in_order(session, pool, stored_video, streams, tmp_path):
    _, segments = _rendition(session, pool, stored_video, tmp_path)

    text = streams.build_manifest(session, stored_video.id, "720p")

    lines = text.strip().split("\n")
    assert lines[0] == "#EXTM3U"
    assert "#EXT-X-TARGETDURATION:11" in lines
    assert "#EXT-X-MEDIA-SEQUENCE:0" in lines
    assert lines[-1] == "#EXT-X-ENDLIST"
    assert [l for l in lines if l.startswith("#EXTINF")] == [
        "#EXTINF:10.010000,", "#EXTINF:9.976000,", "#EXTINF:3.200000,",
    ]
    assert [l for l in lines if l.startswith("/stream/segment")] == [
        f"/stream/segment?segmentId={s.id}" for s in segments
    ]


def test_manifest_is_not_served_while_conversion_runs(session, pool, stored_video, streams, tmp_path):
    _rendition(session, pool, stored_video, tmp_path, status=JobStatus.PROCESSING)

    with pytest.raises(NoSegments):
        streams.build_manifest(session, stored_video.id)


def test_manifest_for_a_resolution_that_is_not_ready(session, pool, stored_video, streams, tmp_path):
    _rendition(session, pool, stored_video, tmp_path, "720p")

    with pytest.raises(NoSegments):
        streams.build_manifest(session, stored_video.id, "1080p")


def test_default_resolution_is_the_first_one_written(session, pool, stored_video, streams, tmp_path):
    now = datetime.utcnow()
    _rendition(session, pool, stored_video, tmp_path, "720p", first_written=now)
    _, low = _rendition(session, pool, stored_video, tmp_path, "360p", durations=(10.0,), first_written=now - timedelta(minutes=5))

    text = streams.build_manifest(session, stored_video.id)

    assert f"segmentId={low[0].id}" in text


def test_gap_in_segment_indices_is_not_served(session, pool, stored_video, streams, tmp_path):
    _, segments = _rendition(session, pool, stored_video, tmp_path)
    session.delete(segments[1])
    session.commit()

    with pytest.raises(NoSegments):
        streams.build_manifest(session, stored_video.id, "720p")


def test_master_manifest_lists_ready_renditions(session, pool, stored_video, streams, tmp_path):
    _rendition(session, pool, stored_video, tmp_path, "360p")
    _rendition(session, pool, stored_video, tmp_path, "720p")
    _rendition(session, pool, stored_video, tmp_path, "1080p", status=JobStatus.WAITING)

    text = streams.build_master_manifest(session, stored_video.id)

    assert text.startswith("#EXTM3U")
    assert "#EXT-X-STREAM-INF:BANDWIDTH=2628000,RESOLUTION=1280x720" in text
    assert "#EXT-X-STREAM-INF:BANDWIDTH=896000,RESOLUTION=640x360" in text
    assert "1920x1080" not in text
    assert text.index("1280x720") < text.index("640x360")
    assert f"/stream/manifest/{stored_video.id}?resolution=720p" in text


def test_manifest_cache_follows_reconversion(session, pool, stored_video, streams, tmp_path):
    job, segments = _rendition(session, pool, stored_video, tmp_path)
    first = streams.build_manifest(session, stored_video.id, "720p")

    # rows changed but the ready job did not, the cached text is served
    extra = tmp_path / "extra.ts"
    extra.write_bytes(b"extra")
    blob = pool.put(session, str(extra), "video/mp2t", "extra.ts")
    session.add(Segment(asset_id=stored_video.id, resolution="720p", index=3, duration=1.0,
                        account_id=blob.account_id, remote_id=blob.remote_id))
    session.commit()
    assert streams.build_manifest(session, stored_video.id, "720p") == first

    job.completed_at = datetime.utcnow() + timedelta(seconds=1)
    session.add(job)
    session.commit()
    rebuilt = streams.build_manifest(session, stored_video.id, "720p")
    assert rebuilt != first
    assert rebuilt.count("#EXTINF") == 4


def test_manifest_cache_invalidate_and_ttl():
    now = [0.0]
    cache = ManifestCache(ttl_seconds=60, clock=lambda: now[0])
    cache.put("asset", "720p", "fp", "text")

    assert cache.get("asset", "720p", "fp") == "text"
    assert cache.get("asset", "720p", "other") is None
    cache.put("asset", "720p", "fp", "text")
    now[0] = 61
    assert cache.get("asset", "720p", "fp") is None

    cache.put("asset", "720p", "fp", "text")
    cache.put("asset", "360p", "fp", "text")
    cache.invalidate("asset")
    assert len(cache) == 0


def test_segment_downloaded_once_within_ttl(session, pool, registry, stored_video, streams, tmp_path):
    _, segments = _rendition(session, pool, stored_video, tmp_path)
    client = registry.get(segments[0].account_id)

    first = streams.fetch_segment(session, segments[0].id)
    second = streams.fetch_segment(session, segments[0].id)

    assert first == second
    with open(first, "rb") as f:
        assert f.read() == b"720p:0"
    assert client.calls["download"] == 1


def test_segment_downloaded_again_after_expiry(session, pool, registry, stored_video, streams, clock, tmp_path):
    _, segments = _rendition(session, pool, stored_video, tmp_path)
    client = registry.get(segments[0].account_id)

    streams.fetch_segment(session, segments[0].id)
    clock.now += 8 * 24 * 3600
    streams.fetch_segment(session, segments[0].id)

    assert client.calls["download"] == 2


def test_concurrent_requests_share_one_download(session, pool, registry, stored_video, segment_cache, tmp_path):
    _, segments = _rendition(session, pool, stored_video, tmp_path)
    client = registry.get(segments[0].account_id)
    original_download = client.download

    def slow_download(remote_id, dest_path):
        time.sleep(0.05)
        return original_download(remote_id, dest_path)

    client.download = slow_download
    blob = segments[0].blob
    paths = []

    def fetch():
        paths.append(segment_cache.fetch(session, blob))

    threads = [threading.Thread(target=fetch) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(set(paths)) == 1
    assert client.calls["download"] == 1
    assert segment_cache._locks == {}


def test_failed_download_leaves_no_partial_file(session, pool, registry, stored_video, segment_cache, tmp_path):
    _, segments = _rendition(session, pool, stored_video, tmp_path)
    registry.get(segments[0].account_id).download_errors = [DriveError("drive error 500")]

    with pytest.raises(DownloadFailed):
        segment_cache.fetch(session, segments[0].blob)

    assert os.listdir(segment_cache.cache_dir) == []
    assert segment_cache._locks == {}


def test_download_locks_do_not_accumulate(session, pool, stored_video, segment_cache, tmp_path):
    _, segments = _rendition(session, pool, stored_video, tmp_path)

    for segment in segments:
        segment_cache.fetch(session, segment.blob)
        segment_cache.fetch(session, segment.blob)

    assert len(os.listdir(segment_cache.cache_dir)) == len(segments)
    assert segment_cache._locks == {}


def test_unknown_segment(session, streams):
    from uuid import uuid4

    with pytest.raises(SegmentNotFound):
        streams.fetch_segment(session, uuid4())


def test_purge_expired(session, pool, stored_video, segment_cache, clock, tmp_path):
    _, segments = _rendition(session, pool, stored_video, tmp_path)
    segment_cache.fetch(session, segments[0].blob)
    segment_cache.fetch(session, segments[1].blob)

    assert segment_cache.purge_expired() == 0
    clock.now += 8 * 24 * 3600
    assert segment_cache.purge_expired() == 2
    assert os.listdir(segment_cache.cache_dir) == []
