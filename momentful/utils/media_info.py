"""Media measurement utilities using Pillow and FFprobe/FFmpeg."""

import io
import json
import subprocess
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

from momentful.config import get_settings


def _get_settings():
    """Get settings lazily to avoid import issues in tests."""
    return get_settings()


@dataclass
class MediaInfo:
    """Measured media properties."""

    width: int
    height: int
    duration_ms: int | None = None
    format: str | None = None


def get_image_info(data: bytes) -> MediaInfo:
    """
    Measure an image from its bytes.

    Raises:
        ValueError: If the bytes are not a readable image
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.verify()
        # verify() leaves the image unusable; reopen to read the size
        with Image.open(io.BytesIO(data)) as image:
            width, height = image.size
            fmt = image.format
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError) as e:
        raise ValueError(f"Unreadable image: {e}") from e

    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image dimensions: {width}x{height}")
    return MediaInfo(width=width, height=height, format=fmt)


def _run_ffprobe(file_path: str, *args) -> dict:
    """Run ffprobe and return parsed JSON."""
    settings = _get_settings()
    cmd = [
        settings.ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        *args,
        file_path,
    ]

    result = subprocess.run(cmd, capture_output=True, text=True)
    if result.returncode != 0:
        raise RuntimeError(f"ffprobe failed: {result.stderr}")

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise RuntimeError(f"Failed to parse ffprobe output: {e}")


def get_video_info(file_path: str) -> MediaInfo:
    """
    Measure a video file's dimensions and duration.

    Args:
        file_path: Path to video file

    Returns:
        MediaInfo with width, height and duration in milliseconds

    Raises:
        RuntimeError: If ffprobe fails or no video stream is found
    """
    data = _run_ffprobe(file_path, "-show_format", "-show_streams", "-select_streams", "v")

    streams = data.get("streams", [])
    if not streams:
        raise RuntimeError(f"No video stream found in: {file_path}")

    stream = streams[0]
    width = stream.get("width")
    height = stream.get("height")
    if width is None or height is None:
        raise RuntimeError(f"Video dimensions not found in: {file_path}")

    duration = data.get("format", {}).get("duration") or stream.get("duration")
    if duration is None:
        raise RuntimeError(f"Duration not found in: {file_path}")

    return MediaInfo(
        width=int(width),
        height=int(height),
        duration_ms=int(float(duration) * 1000),
        format=data.get("format", {}).get("format_name"),
    )


def extract_video_frame(file_path: str, output_path: str, offset_seconds: float, width: int) -> None:
    """Write one JPEG frame at ``offset_seconds``, scaled to ``width`` pixels wide."""
    settings = _get_settings()
    cmd = [
        settings.ffmpeg_path,
        "-y",
        "-ss", str(offset_seconds),
        "-i", file_path,
        "-frames:v", "1",
        "-vf", f"scale={width}:-2",
        "-q:v", "3",
        output_path,
    ]
    result = subprocess.run(cmd, capture_output=True, text=True)
    if result.returncode != 0:
        raise RuntimeError(f"ffmpeg frame extraction failed: {result.stderr}")
