import subprocess
import json
import os
import tempfile
import logging
from math import gcd
from typing import Callable, List, Optional
from streamvault.core.config import settings
from streamvault.core.errors import ConversionFailed

logger = logging.getLogger(__name__)

# keep the end of ffmpeg's stderr, that is where the actual error is
STDERR_TAIL_BYTES = 8192

def get_video_metadata(file_path: str) -> dict:
    """
    Extracts metadata from a video file using ffprobe.
    Returns a dict with: duration_sec, fps, width, height, aspect_ratio, has_audio
    """
    cmd = [
        settings.FFPROBE_BINARY,
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        file_path
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        data = json.loads(result.stdout)
    except (subprocess.CalledProcessError, ValueError) as e:
        logger.error(f"error probing file {file_path}: {e}")
        raise ConversionFailed(f"ffprobe could not read {os.path.basename(file_path)}") from e

    video_stream = next((s for s in data.get("streams", []) if s.get("codec_type") == "video"), None)
    if not video_stream:
        raise ConversionFailed("no video stream found")
    has_audio = any(s.get("codec_type") == "audio" for s in data.get("streams", []))

    avg_frame_rate = video_stream.get("avg_frame_rate", "0/0")
    try:
        num, den = map(int, avg_frame_rate.split("/"))
        fps = num / den if den != 0 else 0.0
    except ValueError:
        fps = 0.0

    duration_sec = float(data.get("format", {}).get("duration", 0) or 0)

    width = int(video_stream.get("width", 0))
    height = int(video_stream.get("height", 0))

    if width and height:
        gcd_val = gcd(width, height)
        aspect_ratio = f"{width // gcd_val}:{height // gcd_val}"
    else:
        aspect_ratio = "unknown"

    return {
        "duration_sec": duration_sec,
        "fps": fps,
        "width": width,
        "height": height,
        "aspect_ratio": aspect_ratio,
        "has_audio": has_audio,
    }

def parse_progress_line(line: str, duration_sec: float) -> Optional[float]:
    """
    turn one `-progress pipe:1` line into a percentage
    ffmpeg writes out_time_ms in microseconds despite the name
    """
    key, _, value = line.strip().partition("=")
    if key == "progress" and value == "end":
        return 100.0
    if key not in ("out_time_us", "out_time_ms") or duration_sec <= 0:
        return None
    try:
        micros = int(value)
    except ValueError:
        return None
    return max(0.0, min(100.0, micros / 1_000_000 / duration_sec * 100))

def run_with_progress(
    cmd: List[str],
    duration_sec: float,
    on_progress: Callable[[float], None],
    timeout: Optional[float] = None,
) -> None:
    """
    run an ffmpeg command that was given `-progress pipe:1 -nostats`
    stderr goes to a temp file so a chatty encoder can never fill the pipe
    raises ConversionFailed with stderr verbatim on a non-zero exit
    """
    logger.info(f"running: {' '.join(cmd)}")
    with tempfile.TemporaryFile() as stderr_file:
        process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=stderr_file, text=True)
        try:
            for line in process.stdout:
                percent = parse_progress_line(line, duration_sec)
                if percent is not None:
                    on_progress(percent)
            returncode = process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
            raise ConversionFailed(f"ffmpeg timed out after {timeout}s")
        finally:
            if process.stdout:
                process.stdout.close()

        if returncode != 0:
            stderr_file.seek(0, os.SEEK_END)
            size = stderr_file.tell()
            stderr_file.seek(max(0, size - STDERR_TAIL_BYTES))
            stderr = stderr_file.read().decode("utf-8", errors="replace").strip()
            raise ConversionFailed(stderr or f"ffmpeg exited with code {returncode}")

def extract_frame(input_path: str, output_path: str, timestamp: str = "00:00:01", size: int = 200) -> str:
    """grab one frame scaled to fit a size x size box"""
    cmd = [
        settings.FFMPEG_BINARY,
        "-hide_banner",
        "-ss", timestamp,
        "-i", input_path,
        "-frames:v", "1",
        "-vf", f"scale={size}:{size}:force_original_aspect_ratio=decrease",
        "-y",
        output_path
    ]
    try:
        subprocess.run(cmd, check=True, capture_output=True, text=True, timeout=120)
    except subprocess.CalledProcessError as e:
        raise ConversionFailed(f"frame extraction failed: {e.stderr}") from e
    return output_path
