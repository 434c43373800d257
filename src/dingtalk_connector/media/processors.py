"""Turn media directives in a finished reply into uploads and side messages.

Stages run in a fixed order over the accumulated reply text:

1. local images (markdown syntax, then bare paths) are uploaded and rewritten
   in place to ``![alt](media_id)``;
2. video, audio and file markers are removed from the text, and every item
   is uploaded and sent as its own message through the given dispatcher.

Each item that is not an in-place image yields one status line. The lines
keep discovery order and are appended after the cleaned text once all
stages are done. A failing item never stops the batch.
"""

from __future__ import annotations

import logging
from contextlib import AbstractContextManager
from pathlib import Path, PureWindowsPath
from typing import Awaitable, Callable, Optional

from ..config import DEFAULT_MEDIA_MAX_BYTES
from ..services.messaging import Dispatcher, DispatchError
from . import probe
from .markers import (
    AudioMarker,
    FileMarker,
    VideoMarker,
    find_bare_image_paths,
    find_markdown_images,
    scan_audio_markers,
    scan_file_markers,
    scan_video_markers,
    to_local_path,
)
from .uploader import MediaUploader

logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS: frozenset[str] = frozenset(
    {"mp3", "wav", "amr", "ogg", "aac", "flac", "m4a"}
)
# Audio routed through a file marker is never probed and carries this value
PLACEHOLDER_VOICE_DURATION_MS = 60_000
NO_TOKEN_REASON = "无法获取上传凭证"

VideoProbe = Callable[[str], Awaitable[Optional[probe.VideoMetadata]]]
DurationProbe = Callable[[str], Awaitable[Optional[float]]]
ThumbnailGenerator = Callable[[str, Path], Awaitable[bool]]
ThumbnailFactory = Callable[[], AbstractContextManager[Path]]


def is_audio_file(file_type: str) -> bool:
    return file_type.lower().lstrip(".") in AUDIO_EXTENSIONS


def _display_name(path: str) -> str:
    name = Path(path).name
    if "\\" in name:
        name = PureWindowsPath(path).name
    return name or path


def _format_mb(size: int, digits: int) -> str:
    return f"{size / (1024 * 1024):.{digits}f}"


def append_statuses(text: str, statuses: list[str]) -> str:
    if not statuses:
        return text
    status_text = "\n".join(statuses)
    return f"{text}\n\n{status_text}" if text else status_text


class MediaPostProcessor:
    """Scan, upload and dispatch media referenced by a model reply."""

    def __init__(
        self,
        uploader: MediaUploader,
        *,
        max_bytes: int = DEFAULT_MEDIA_MAX_BYTES,
        probe_video: VideoProbe = probe.probe_video,
        probe_duration: DurationProbe = probe.probe_duration,
        generate_thumbnail: ThumbnailGenerator = probe.generate_thumbnail,
        thumbnail_factory: ThumbnailFactory = probe.temporary_thumbnail,
    ) -> None:
        self._uploader = uploader
        self._max_bytes = max_bytes
        self._probe_video = probe_video
        self._probe_duration = probe_duration
        self._generate_thumbnail = generate_thumbnail
        self._thumbnail_factory = thumbnail_factory

    @property
    def _limit_mb(self) -> str:
        return _format_mb(self._max_bytes, 0)

    async def process(
        self, text: str, dispatcher: Dispatcher, token: Optional[str]
    ) -> str:
        """Run every stage and return the cleaned text with status lines."""

        statuses: list[str] = []
        text = await self.process_images(text, token, statuses)
        text = await self.process_videos(text, dispatcher, token, statuses)
        text = await self.process_audio(text, dispatcher, token, statuses)
        text = await self.process_files(text, dispatcher, token, statuses)
        return append_statuses(text, statuses)

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------
    async def process_images(
        self, text: str, token: Optional[str], statuses: list[str]
    ) -> str:
        if not token:
            logger.warning("No upload token, leaving local image references as written")
            return text

        markdown_images = find_markdown_images(text)
        if markdown_images:
            logger.info("Found %d markdown image(s)", len(markdown_images))
            parts: list[str] = []
            cursor = 0
            for image in markdown_images:
                parts.append(text[cursor : image.start])
                media_id = await self._uploader.upload(
                    image.raw_path, "image", token, self._max_bytes
                )
                if media_id:
                    parts.append(f"![{image.alt_text}]({media_id})")
                else:
                    parts.append(image.alt_text)
                    statuses.append(
                        f"⚠️ 图片上传失败: {_display_name(to_local_path(image.raw_path))}"
                    )
                cursor = image.end
            parts.append(text[cursor:])
            text = "".join(parts)

        bare_images = find_bare_image_paths(text)
        if bare_images:
            logger.info("Found %d bare image path(s)", len(bare_images))
        # Back to front so earlier offsets stay valid
        for image in reversed(bare_images):
            media_id = await self._uploader.upload(
                image.raw_path, "image", token, self._max_bytes
            )
            if media_id:
                text = f"{text[: image.start]}![]({media_id}){text[image.end :]}"
            else:
                logger.info("Leaving bare path untouched: %s", image.raw_path)
        return text

    # ------------------------------------------------------------------
    # Video
    # ------------------------------------------------------------------
    async def process_videos(
        self,
        text: str,
        dispatcher: Dispatcher,
        token: Optional[str],
        statuses: list[str],
    ) -> str:
        scan = scan_video_markers(text)
        if scan.markers:
            logger.info(
                "Found %d video marker(s), dispatch via %s",
                len(scan.markers),
                dispatcher.label,
            )
        for marker in scan.markers:
            statuses.append(await self._handle_video(marker, dispatcher, token))
        return scan.cleaned_text

    async def _handle_video(
        self, marker: VideoMarker, dispatcher: Dispatcher, token: Optional[str]
    ) -> str:
        path = to_local_path(marker.path)
        name = _display_name(path)
        if not Path(path).is_file():
            logger.warning("Video not found: %s", path)
            return f"⚠️ 视频文件不存在: {name}"
        if not token:
            return f"⚠️ 视频上传失败: {name}（{NO_TOKEN_REASON}）"

        try:
            metadata = await self._probe_video(path)
            if metadata is None:
                return f"⚠️ 视频处理失败: {name}（无法读取视频信息，请检查 ffmpeg 是否已安装）"

            with self._thumbnail_factory() as thumbnail:
                if not await self._generate_thumbnail(path, thumbnail):
                    return f"⚠️ 视频处理失败: {name}（无法生成封面）"

                video_media_id = await self._uploader.upload(
                    path, "video", token, self._max_bytes
                )
                if not video_media_id:
                    return f"⚠️ 视频上传失败: {name}（文件可能超过 {self._limit_mb}MB 限制）"

                pic_media_id = await self._uploader.upload(
                    str(thumbnail), "image", token, self._max_bytes
                )
                if not pic_media_id:
                    return f"⚠️ 视频封面上传失败: {name}"

            await dispatcher.send_video(video_media_id, pic_media_id, metadata.duration)
        except DispatchError as exc:
            logger.error("Video dispatch failed for %s: %s", name, exc)
            return f"⚠️ 视频发送失败: {name}（{exc}）"
        except Exception as exc:
            logger.exception("Video processing failed for %s", name)
            return f"⚠️ 视频处理异常: {name}（{exc}）"

        logger.info("Video sent: %s", name)
        return f"✅ 视频已发送: {name}"

    # ------------------------------------------------------------------
    # Audio
    # ------------------------------------------------------------------
    async def process_audio(
        self,
        text: str,
        dispatcher: Dispatcher,
        token: Optional[str],
        statuses: list[str],
    ) -> str:
        scan = scan_audio_markers(text)
        if scan.markers:
            logger.info(
                "Found %d audio marker(s), dispatch via %s",
                len(scan.markers),
                dispatcher.label,
            )
        for marker in scan.markers:
            statuses.append(await self._handle_audio(marker, dispatcher, token))
        return scan.cleaned_text

    async def _handle_audio(
        self, marker: AudioMarker, dispatcher: Dispatcher, token: Optional[str]
    ) -> str:
        path = to_local_path(marker.path)
        name = _display_name(path)
        if not Path(path).is_file():
            logger.warning("Audio not found: %s", path)
            return f"⚠️ 音频文件不存在: {name}"
        if not token:
            return f"⚠️ 音频上传失败: {name}（{NO_TOKEN_REASON}）"

        try:
            duration = await self._probe_duration(path)
            if duration is None:
                return f"⚠️ 音频处理失败: {name}（无法读取音频时长）"

            media_id = await self._uploader.upload(path, "voice", token, self._max_bytes)
            if not media_id:
                return f"⚠️ 音频上传失败: {name}（文件可能超过 {self._limit_mb}MB 限制）"

            await dispatcher.send_voice(media_id, int(duration * 1000))
        except DispatchError as exc:
            logger.error("Audio dispatch failed for %s: %s", name, exc)
            return f"⚠️ 音频发送失败: {name}（{exc}）"
        except Exception as exc:
            logger.exception("Audio processing failed for %s", name)
            return f"⚠️ 音频处理异常: {name}（{exc}）"

        logger.info("Audio sent: %s", name)
        return f"✅ 音频已发送: {name}"

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------
    async def process_files(
        self,
        text: str,
        dispatcher: Dispatcher,
        token: Optional[str],
        statuses: list[str],
    ) -> str:
        scan = scan_file_markers(text)
        if scan.markers:
            logger.info(
                "Found %d file marker(s), dispatch via %s",
                len(scan.markers),
                dispatcher.label,
            )
        for marker in scan.markers:
            statuses.append(await self._handle_file(marker, dispatcher, token))
        return scan.cleaned_text

    async def _handle_file(
        self, marker: FileMarker, dispatcher: Dispatcher, token: Optional[str]
    ) -> str:
        path = Path(to_local_path(marker.path))
        name = marker.file_name
        if not path.is_file():
            logger.warning("File not found: %s", path)
            return f"⚠️ 文件不存在: {name}"

        size = path.stat().st_size
        if size > self._max_bytes:
            return (
                f"⚠️ 文件过大无法发送: {name}"
                f"（{_format_mb(size, 1)}MB，限制 {self._limit_mb}MB）"
            )

        audio = is_audio_file(marker.file_type)
        label = "音频" if audio else "文件"
        if not token:
            return f"⚠️ {label}上传失败: {name}（{NO_TOKEN_REASON}）"

        try:
            media_id = await self._uploader.upload(
                str(path), "voice" if audio else "file", token, self._max_bytes
            )
            if not media_id:
                return f"⚠️ {label}上传失败: {name}"

            if audio:
                await dispatcher.send_voice(media_id, PLACEHOLDER_VOICE_DURATION_MS)
            else:
                await dispatcher.send_file(media_id, name, marker.file_type)
        except DispatchError as exc:
            logger.error("File dispatch failed for %s: %s", name, exc)
            return f"⚠️ {label}发送失败: {name}（{exc}）"
        except Exception as exc:
            logger.exception("File processing failed for %s", name)
            return f"⚠️ {label}处理异常: {name}（{exc}）"

        logger.info("%s sent: %s", "Audio file" if audio else "File", name)
        return f"✅ {label}已发送: {name}"


__all__ = [
    "AUDIO_EXTENSIONS",
    "MediaPostProcessor",
    "PLACEHOLDER_VOICE_DURATION_MS",
    "append_statuses",
    "is_audio_file",
]
