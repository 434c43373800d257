"""ffprobe / ffmpeg helpers for outbound media.

Both tools must be available on PATH. Every helper returns ``None`` (or
``False``) on failure so a single bad file only costs one status line.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)

FFPROBE_TIMEOUT_SECONDS = 15.0
FFMPEG_TIMEOUT_SECONDS = 30.0
THUMBNAIL_HEIGHT = 360
THUMBNAIL_TIMEMARK = "1"


@dataclass(frozen=True)
class VideoMetadata:
    duration: int
    width: int
    height: int


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        pass
    await proc.wait()


async def _run(cmd: list[str], timeout: float) -> Optional[bytes]:
    """Run ``cmd`` and return stdout, or ``None`` on error or timeout."""

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        logger.error("Unable to launch %s: %s", cmd[0], exc)
        return None

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _terminate(proc)
        logger.error("%s timed out after %.0fs", cmd[0], timeout)
        return None
    except asyncio.CancelledError:
        await _terminate(proc)
        raise

    if proc.returncode != 0:
        error_msg = stderr.decode("utf-8", errors="ignore").strip() if stderr else ""
        logger.error("%s exited with %s: %s", cmd[0], proc.returncode, error_msg)
        return None
    return stdout


async def _ffprobe(path: str) -> Optional[dict[str, Any]]:
    stdout = await _run(
        [
            "ffprobe",
            "-v",
            "error",
            "-hide_banner",
            "-show_entries",
            "format=duration:stream=codec_type,width,height",
            "-of",
            "json",
            path,
        ],
        FFPROBE_TIMEOUT_SECONDS,
    )
    if stdout is None:
        return None
    try:
        data = json.loads(stdout.decode("utf-8", errors="ignore"))
    except json.JSONDecodeError as exc:
        logger.error("Unparseable ffprobe output for %s: %s", path, exc)
        return None
    return data if isinstance(data, dict) else None


def _format_duration(data: dict[str, Any]) -> float:
    try:
        return float(data.get("format", {}).get("duration") or 0.0)
    except (TypeError, ValueError):
        return 0.0


async def probe_video(path: str) -> Optional[VideoMetadata]:
    """Return duration (whole seconds) and frame size of the first video stream."""

    data = await _ffprobe(path)
    if data is None:
        return None

    video_stream = next(
        (s for s in data.get("streams", []) if s.get("codec_type") == "video"),
        None,
    )
    if video_stream is None:
        logger.warning("No video stream in %s", path)
        return None

    metadata = VideoMetadata(
        duration=int(_format_duration(data)),
        width=int(video_stream.get("width") or 0),
        height=int(video_stream.get("height") or 0),
    )
    logger.info(
        "Video metadata: duration=%ss %sx%s",
        metadata.duration,
        metadata.width,
        metadata.height,
    )
    return metadata


async def probe_duration(path: str) -> Optional[float]:
    """Return the container duration in seconds."""

    data = await _ffprobe(path)
    if data is None:
        return None
    duration = _format_duration(data)
    return duration if duration > 0 else None


async def generate_thumbnail(video_path: str, output_path: Path) -> bool:
    """Grab one frame at the 1s mark, scaled to a fixed height."""

    stdout = await _run(
        [
            "ffmpeg",
            "-y",
            "-ss",
            THUMBNAIL_TIMEMARK,
            "-i",
            video_path,
            "-frames:v",
            "1",
            "-vf",
            f"scale=-2:{THUMBNAIL_HEIGHT}",
            str(output_path),
        ],
        FFMPEG_TIMEOUT_SECONDS,
    )
    if stdout is None or not output_path.exists() or output_path.stat().st_size == 0:
        return False
    logger.info("Thumbnail written to %s", output_path)
    return True


@contextmanager
def temporary_thumbnail() -> Iterator[Path]:
    """Yield a scratch ``.jpg`` path that is removed when the block exits."""

    fd, name = tempfile.mkstemp(
        prefix=f"thumbnail_{int(time.time() * 1000)}_", suffix=".jpg"
    )
    os.close(fd)
    path = Path(name)
    try:
        yield path
    finally:
        path.unlink(missing_ok=True)


__all__ = [
    "VideoMetadata",
    "generate_thumbnail",
    "probe_duration",
    "probe_video",
    "temporary_thumbnail",
]
