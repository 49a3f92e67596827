import threading

import pytest

from streamvault.core.errors import InvalidRequest
from streamvault.services.ffmpeg import parse_progress_line
from streamvault.services.progress import ProgressChannel, ProgressUpdater
from streamvault.services.transcoder import (
    RESOLUTION_PROFILES, build_hls_command, get_profile, list_segment_files, parse_playlist_durations,
)


def test_resolution_profiles():
    assert get_profile("720p").width == 1280
    assert get_profile("720p").height == 720
    assert get_profile("1080p").video_bitrate == "5000k"
    assert RESOLUTION_PROFILES["480p"].bandwidth == 1_328_000
    with pytest.raises(InvalidRequest):
        get_profile("4k")


def test_hls_command_carries_profile_and_segmenting_options(tmp_path):
    cmd = build_hls_command("/in/source.mp4", str(tmp_path), get_profile("720p"), segment_seconds=10)

    joined = " ".join(cmd)
    assert "-vf scale=1280:720" in joined
    assert "-b:v 2500k" in joined
    assert "-b:a 128k" in joined
    assert "-profile:v main" in joined
    assert "-start_number 0" in joined
    assert "-hls_time 10" in joined
    assert "-hls_list_size 0" in joined
    assert "-progress pipe:1" in joined
    assert cmd[-1].endswith("playlist.m3u8")
    assert str(tmp_path / "segment_%03d.ts") in cmd


def test_playlist_durations_are_read_per_segment(tmp_path):
    playlist = tmp_path / "playlist.m3u8"
    playlist.write_text(
        "#EXTM3U\n"
        "#EXT-X-VERSION:3\n"
        "#EXT-X-TARGETDURATION:10\n"
        "#EXTINF:10.010000,\n"
        "segment_000.ts\n"
        "#EXTINF:9.976000,\n"
        "segment_001.ts\n"
        "#EXTINF:3.200000,\n"
        "segment_002.ts\n"
        "#EXT-X-ENDLIST\n"
    )

    durations = parse_playlist_durations(str(playlist))

    assert durations == {"segment_000.ts": 10.01, "segment_001.ts": 9.976, "segment_002.ts": 3.2}


def test_segment_files_are_listed_in_numeric_order(tmp_path):
    for name in ("segment_010.ts", "segment_002.ts", "segment_1000.ts", "playlist.m3u8", "segment_000.ts"):
        (tmp_path / name).write_bytes(b"")

    names = [path.rsplit("/", 1)[-1] for path in list_segment_files(str(tmp_path))]

    assert names == ["segment_000.ts", "segment_002.ts", "segment_010.ts", "segment_1000.ts"]


def test_progress_lines():
    assert parse_progress_line("out_time_us=5000000", 10.0) == 50.0
    assert parse_progress_line("out_time_ms=2500000\n", 10.0) == 25.0
    assert parse_progress_line("progress=end", 10.0) == 100.0
    assert parse_progress_line("frame=120", 10.0) is None
    assert parse_progress_line("out_time_us=N/A", 10.0) is None


def test_channel_drops_oldest_when_full():
    channel = ProgressChannel(maxsize=3)
    for percent in range(10):
        channel.publish(percent)
    channel.close()

    received = list(channel)

    assert received[-1] == 9
    assert len(received) <= 3
    assert channel.dropped >= 7


def test_updater_persists_only_five_point_steps():
    persisted = []
    updater = ProgressUpdater(persisted.append, step=5)

    for percent in (0.5, 1, 3, 4.9, 5, 6, 9.9, 10, 37, 38, 100):
        updater.offer(percent)

    assert persisted == [5, 10, 37, 100]


def test_updater_thread_drains_until_closed():
    persisted = []
    channel = ProgressChannel(maxsize=64)
    updater = ProgressUpdater(persisted.append, step=5)
    thread = updater.start(channel)

    for percent in range(0, 101):
        channel.publish(percent)
    channel.close()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert persisted[-1] == 100
    assert all(b - a >= 5 for a, b in zip(persisted, persisted[1:-1]))


def test_publish_never_blocks_without_a_reader():
    channel = ProgressChannel(maxsize=1)
    done = threading.Event()

    def spam():
        for percent in range(1000):
            channel.publish(percent)
        done.set()

    thread = threading.Thread(target=spam)
    thread.start()
    thread.join(timeout=5)

    assert done.is_set()
