import threading
import time
from uuid import uuid4

import pytest
from sqlmodel import Session, SQLModel, create_engine

from streamvault.core.errors import InvalidRequest
from streamvault.models import Asset, AssetStatus, ConversionJob, JobStatus
from streamvault.services import conversion_jobs


def _job(session, asset, resolution):
    return conversion_jobs.find_job(session, asset.id, resolution)


def test_request_creates_one_waiting_job_per_resolution(session, stored_video, enqueued):
    results = conversion_jobs.request_conversion(session, stored_video.id, ["720p", "360p"])

    assert [r["resolution"] for r in results] == ["720p", "360p"]
    assert all(r["created"] for r in results)
    assert all(r["status"] == JobStatus.WAITING for r in results)
    assert len(enqueued["conversions"]) == 2
    session.refresh(stored_video)
    assert stored_video.status == AssetStatus.PROCESSING

    job = _job(session, stored_video, "720p")
    assert (job.width, job.height, job.video_bitrate, job.audio_bitrate) == (1280, 720, "2500k", "128k")
    assert job.rq_job_id.startswith("rq-conversion-")


def test_duplicate_request_returns_the_active_job(session, stored_video, enqueued):
    first = conversion_jobs.request_conversion(session, stored_video.id, ["720p"])
    second = conversion_jobs.request_conversion(session, stored_video.id, ["720p", "720p"])

    assert len(second) == 1
    assert second[0]["created"] is False
    assert second[0]["jobId"] == first[0]["jobId"]
    assert len(enqueued["conversions"]) == 1
    assert len(session.query(ConversionJob).all()) == 1


def test_simultaneous_requests_create_one_job(tmp_path, monkeypatch):
    engine = create_engine(f"sqlite:///{tmp_path / 'jobs.db'}", connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        asset = Asset(
            identifier=str(uuid4()),
            name="race.mp4",
            category="video",
            size_bytes=1024,
            media_type="video/mp4",
            status=AssetStatus.READY,
            account_id=uuid4(),
            remote_id="race-remote",
        )
        session.add(asset)
        session.commit()
        asset_id = asset.id

    find_job = conversion_jobs.find_job

    def slow_find_job(session, asset_id, resolution):
        job = find_job(session, asset_id, resolution)
        # widen the gap between the lookup and the insert
        time.sleep(0.05)
        return job

    monkeypatch.setattr(conversion_jobs, "find_job", slow_find_job)
    results = []
    errors = []

    def request():
        try:
            with Session(engine) as session:
                results.extend(conversion_jobs.request_conversion(
                    session, asset_id, ["720p"], enqueue=lambda job_id: f"rq-{job_id}",
                ))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=request) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert [r["created"] for r in results].count(True) == 1
    assert len({r["jobId"] for r in results}) == 1
    with Session(engine) as session:
        assert len(session.query(ConversionJob).all()) == 1
    engine.dispose()


def test_insert_conflict_reports_the_existing_job(session, stored_video, enqueued, monkeypatch):
    first = conversion_jobs.request_conversion(session, stored_video.id, ["720p"])
    find_job = conversion_jobs.find_job
    missed = []

    def find_job_missing_once(session, asset_id, resolution):
        # another process inserted the row after this lookup
        if not missed:
            missed.append(resolution)
            return None
        return find_job(session, asset_id, resolution)

    monkeypatch.setattr(conversion_jobs, "find_job", find_job_missing_once)

    results = conversion_jobs.request_conversion(session, stored_video.id, ["720p"])

    assert results[0]["created"] is False
    assert results[0]["jobId"] == first[0]["jobId"]
    assert len(enqueued["conversions"]) == 1
    assert len(session.query(ConversionJob).all()) == 1


def test_ready_resolution_is_a_no_op(session, stored_video, enqueued):
    conversion_jobs.request_conversion(session, stored_video.id, ["720p"])
    job = _job(session, stored_video, "720p")
    conversion_jobs.start_job(session, job)
    conversion_jobs.complete_job(session, job)

    results = conversion_jobs.request_conversion(session, stored_video.id, ["720p"])

    assert results[0]["status"] == JobStatus.READY
    assert results[0]["created"] is False
    assert len(enqueued["conversions"]) == 1


def test_failed_job_is_not_retried_by_a_new_request(session, stored_video, enqueued):
    conversion_jobs.request_conversion(session, stored_video.id, ["720p"])
    job = _job(session, stored_video, "720p")
    conversion_jobs.start_job(session, job)
    conversion_jobs.fail_job(session, job, "Invalid data found when processing input")

    results = conversion_jobs.request_conversion(session, stored_video.id, ["720p"])

    assert results[0]["status"] == JobStatus.FAILED
    assert results[0]["created"] is False
    assert len(enqueued["conversions"]) == 1


def test_retry_resets_a_failed_job(session, stored_video, enqueued):
    conversion_jobs.request_conversion(session, stored_video.id, ["720p"])
    job = _job(session, stored_video, "720p")
    conversion_jobs.start_job(session, job)
    conversion_jobs.update_progress(session, job.id, 40)
    conversion_jobs.fail_job(session, job, "boom")

    retried = conversion_jobs.retry_job(session, job.id)

    assert retried.id == job.id
    assert retried.status == JobStatus.WAITING
    assert retried.progress_percent == 0
    assert retried.error_message is None
    assert enqueued["conversions"] == [job.id, job.id]
    session.refresh(stored_video)
    assert stored_video.status == AssetStatus.PROCESSING


def test_only_failed_jobs_can_be_retried(session, stored_video):
    conversion_jobs.request_conversion(session, stored_video.id, ["720p"])
    job = _job(session, stored_video, "720p")

    with pytest.raises(InvalidRequest):
        conversion_jobs.retry_job(session, job.id)


def test_progress_only_moves_forward_while_processing(session, stored_video):
    conversion_jobs.request_conversion(session, stored_video.id, ["720p"])
    job = _job(session, stored_video, "720p")

    conversion_jobs.update_progress(session, job.id, 30)
    session.refresh(job)
    assert job.progress_percent == 0

    conversion_jobs.start_job(session, job)
    conversion_jobs.update_progress(session, job.id, 30)
    conversion_jobs.update_progress(session, job.id, 20)
    session.refresh(job)
    assert job.progress_percent == 30


def test_asset_rolls_up_to_ready_when_any_resolution_converts(session, stored_video):
    conversion_jobs.request_conversion(session, stored_video.id, ["720p", "360p"])
    hd = _job(session, stored_video, "720p")
    sd = _job(session, stored_video, "360p")

    conversion_jobs.start_job(session, hd)
    conversion_jobs.fail_job(session, hd, "encoder error")
    session.refresh(stored_video)
    assert stored_video.status == AssetStatus.PROCESSING

    conversion_jobs.start_job(session, sd)
    conversion_jobs.complete_job(session, sd)
    session.refresh(stored_video)
    assert stored_video.status == AssetStatus.READY


def test_asset_fails_when_every_resolution_fails(session, stored_video):
    conversion_jobs.request_conversion(session, stored_video.id, ["720p"])
    job = _job(session, stored_video, "720p")
    conversion_jobs.start_job(session, job)
    conversion_jobs.fail_job(session, job, "encoder error")

    asset = session.get(Asset, stored_video.id)
    assert asset.status == AssetStatus.FAILED
    assert asset.error_message


def test_aggregate_status(session, stored_video):
    assert conversion_jobs.aggregate_status(session, stored_video.id)["status"] == "none"

    conversion_jobs.request_conversion(session, stored_video.id, ["720p", "480p"])
    assert conversion_jobs.aggregate_status(session, stored_video.id)["status"] == JobStatus.WAITING

    hd = _job(session, stored_video, "720p")
    sd = _job(session, stored_video, "480p")
    conversion_jobs.start_job(session, hd)
    assert conversion_jobs.aggregate_status(session, stored_video.id)["status"] == JobStatus.PROCESSING

    conversion_jobs.complete_job(session, hd)
    conversion_jobs.start_job(session, sd)
    conversion_jobs.complete_job(session, sd)
    aggregate = conversion_jobs.aggregate_status(session, stored_video.id)
    assert aggregate["status"] == JobStatus.READY
    assert aggregate["progress"] == 100
    assert sorted(aggregate["resolutions"]) == ["480p", "720p"]


def test_enqueue_failure_marks_job_failed(session, stored_video, monkeypatch):
    def broken(job_id):
        raise ConnectionError("redis down")

    results = conversion_jobs.request_conversion(session, stored_video.id, ["720p"], enqueue=broken)

    assert results[0]["status"] == JobStatus.FAILED
    assert "redis down" in results[0]["error"]


def test_conversion_rejects_non_video_assets(session, stored_video):
    stored_video.media_type = "image/png"
    session.add(stored_video)
    session.commit()

    with pytest.raises(InvalidRequest):
        conversion_jobs.request_conversion(session, stored_video.id, ["720p"])


def test_unknown_resolution_is_rejected(session, stored_video):
    with pytest.raises(InvalidRequest):
        conversion_jobs.request_conversion(session, stored_video.id, ["2160p"])


def test_lost_processing_jobs_are_failed(session, stored_video):
    conversion_jobs.request_conversion(session, stored_video.id, ["720p", "360p"])
    lost = _job(session, stored_video, "720p")
    alive = _job(session, stored_video, "360p")
    conversion_jobs.start_job(session, lost)
    conversion_jobs.start_job(session, alive)
    states = {lost.rq_job_id: None, alive.rq_job_id: "started"}

    fixed = conversion_jobs.sync_lost_jobs(session, fetch_status=states.get)

    assert fixed == 1
    session.refresh(lost)
    session.refresh(alive)
    assert lost.status == JobStatus.FAILED
    assert alive.status == JobStatus.PROCESSING
