from dataclasses import dataclass
from streamvault.core.config import settings
from streamvault.core.errors import ConversionFailed, InvalidRequest
from streamvault.services import ffmpeg
from streamvault.services.progress import ProgressChannel
from typing import Dict, List, Optional, Tuple
import logging
import os
import re

logger = logging.getLogger(__name__)

PLAYLIST_NAME = "playlist.m3u8"
SEGMENT_PATTERN = "segment_%03d.ts"
_SEGMENT_RE = re.compile(r"^segment_(\d+)\.ts$")


@dataclass(frozen=True)
class ResolutionProfile:
    name: str
    width: int
    height: int
    video_bitrate: str
    audio_bitrate: str

    @property
    def bandwidth(self) -> int:
        """bits per second advertised in the master playlist"""
        return _kbps(self.video_bitrate) * 1000 + _kbps(self.audio_bitrate) * 1000


def _kbps(bitrate: str) -> int:
    return int(bitrate.lower().rstrip("k"))


RESOLUTION_PROFILES: Dict[str, ResolutionProfile] = {
    "1080p": ResolutionProfile("1080p", 1920, 1080, "5000k", "192k"),
    "720p": ResolutionProfile("720p", 1280, 720, "2500k", "128k"),
    "480p": ResolutionProfile("480p", 854, 480, "1200k", "128k"),
    "360p": ResolutionProfile("360p", 640, 360, "800k", "96k"),
}


def get_profile(resolution: str) -> ResolutionProfile:
    profile = RESOLUTION_PROFILES.get(resolution)
    if profile is None:
        supported = ", ".join(RESOLUTION_PROFILES)
        raise InvalidRequest(f"unsupported resolution {resolution!r}, expected one of: {supported}")
    return profile


def build_hls_command(
    input_path: str,
    output_dir: str,
    profile: ResolutionProfile,
    segment_seconds: int = settings.HLS_SEGMENT_SECONDS,
) -> List[str]:
    return [
        settings.FFMPEG_BINARY,
        "-hide_banner",
        "-y",
        "-i", input_path,
        "-vf", f"scale={profile.width}:{profile.height}",
        "-c:v", "libx264",
        "-profile:v", "main",
        "-level", "3.1",
        "-b:v", profile.video_bitrate,
        "-c:a", "aac",
        "-b:a", profile.audio_bitrate,
        "-start_number", "0",
        "-hls_time", str(segment_seconds),
        "-hls_list_size", "0",
        "-hls_segment_filename", os.path.join(output_dir, SEGMENT_PATTERN),
        "-f", "hls",
        "-progress", "pipe:1",
        "-nostats",
        os.path.join(output_dir, PLAYLIST_NAME),
    ]


def parse_playlist_durations(playlist_path: str) -> Dict[str, float]:
    """map segment file name -> #EXTINF duration from an ffmpeg media playlist"""
    durations: Dict[str, float] = {}
    pending: Optional[float] = None
    with open(playlist_path, "r", encoding="utf-8") as f:
        for raw in f:
            line = raw.strip()
            if line.startswith("#EXTINF:"):
                value = line[len("#EXTINF:"):].split(",", 1)[0]
                try:
                    pending = float(value)
                except ValueError:
                    pending = None
            elif line and not line.startswith("#"):
                if pending is not None:
                    durations[os.path.basename(line)] = pending
                pending = None
    return durations


def list_segment_files(output_dir: str) -> List[str]:
    """segment files in emission order (numeric, not lexical)"""
    found = []
    for name in os.listdir(output_dir):
        match = _SEGMENT_RE.match(name)
        if match:
            found.append((int(match.group(1)), name))
    return [os.path.join(output_dir, name) for _, name in sorted(found)]


class HlsTranscoder:
    def __init__(self, segment_seconds: int = settings.HLS_SEGMENT_SECONDS, timeout: Optional[float] = None):
        self.segment_seconds = segment_seconds
        self.timeout = timeout

    def transcode(
        self,
        source_path: str,
        output_dir: str,
        profile: ResolutionProfile,
        channel: Optional[ProgressChannel] = None,
    ) -> List[Tuple[str, float]]:
        """
        encode source_path into HLS segments under output_dir
        returns [(segment_path, duration_seconds)] in playback order
        """
        os.makedirs(output_dir, exist_ok=True)
        duration = ffmpeg.get_video_metadata(source_path)["duration_sec"]
        cmd = build_hls_command(source_path, output_dir, profile, self.segment_seconds)

        on_progress = channel.publish if channel is not None else (lambda percent: None)
        ffmpeg.run_with_progress(cmd, duration, on_progress, timeout=self.timeout)

        segments = list_segment_files(output_dir)
        if not segments:
            raise ConversionFailed(f"ffmpeg produced no segments for {profile.name}")

        playlist = os.path.join(output_dir, PLAYLIST_NAME)
        durations = parse_playlist_durations(playlist) if os.path.exists(playlist) else {}
        logger.info(f"transcoded {os.path.basename(source_path)} to {profile.name}: {len(segments)} segments")
        return [
            (path, durations.get(os.path.basename(path), float(self.segment_seconds)))
            for path in segments
        ]
