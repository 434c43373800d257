"""Detect media directives embedded in model output.

The model is told (see `build_media_system_prompt`) to reference images by
local path and to request video, audio and file delivery with bracketed JSON
tags. The tag literals below are part of that prompt contract and must not
change independently of it.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar
from urllib.parse import unquote

logger = logging.getLogger(__name__)

# Top-level directories treated as local on macOS / Linux hosts
POSIX_ROOTS: tuple[str, ...] = ("tmp", "var", "private", "Users", "home", "root")
URI_PREFIXES: tuple[str, ...] = ("file:///", "MEDIA:", "attachment:///")
IMAGE_EXTENSIONS: tuple[str, ...] = ("png", "jpg", "jpeg", "gif", "bmp", "webp")

VIDEO_TAG = "DINGTALK_VIDEO"
AUDIO_TAG = "DINGTALK_AUDIO"
FILE_TAG = "DINGTALK_FILE"
MARKER_TAGS: tuple[str, ...] = (VIDEO_TAG, AUDIO_TAG, FILE_TAG)

_ROOTS_RE = "|".join(re.escape(root) for root in POSIX_ROOTS)
_URI_RE = "|".join(re.escape(prefix) for prefix in URI_PREFIXES)
_EXT_RE = "|".join(IMAGE_EXTENSIONS)

_POSIX_PATH_RE = re.compile(rf"^/(?:{_ROOTS_RE})(?:/|$)")
_WINDOWS_PATH_RE = re.compile(r"^[A-Za-z]:[\\/]")

LOCAL_IMAGE_RE = re.compile(
    rf"!\[([^\]]*)\]\(((?:{_URI_RE})[^)]+|/(?:{_ROOTS_RE})[^)]+|[A-Za-z]:[\\/ ][^)]+)\)"
)
BARE_IMAGE_PATH_RE = re.compile(
    rf"`?((?:/(?:{_ROOTS_RE})/[^\s`'\",)]+|[A-Za-z]:[\\/][^\s`'\",)]+)\.(?:{_EXT_RE}))`?",
    re.IGNORECASE,
)


def _marker_pattern(tag: str) -> re.Pattern[str]:
    return re.compile(rf"\[{tag}\](.*?)\[/{tag}\]", re.DOTALL)


VIDEO_MARKER_RE = _marker_pattern(VIDEO_TAG)
AUDIO_MARKER_RE = _marker_pattern(AUDIO_TAG)
FILE_MARKER_RE = _marker_pattern(FILE_TAG)
_TAGS_RE = "|".join(MARKER_TAGS)
# An opening tag whose closing tag has not been streamed yet
_UNTERMINATED_MARKER_RE = re.compile(
    rf"\[(?:{_TAGS_RE})\](?:(?!\[/(?:{_TAGS_RE})\]).)*$", re.DOTALL
)

# How far back a bare path match looks for markdown image syntax
_MARKDOWN_LOOKBEHIND = 10


@dataclass(frozen=True)
class ImagePath:
    alt_text: str
    raw_path: str
    start: int
    end: int


@dataclass(frozen=True)
class VideoMarker:
    path: str


@dataclass(frozen=True)
class AudioMarker:
    path: str


@dataclass(frozen=True)
class FileMarker:
    path: str
    file_name: str
    file_type: str


M = TypeVar("M")


@dataclass
class MarkerScan(Generic[M]):
    """Markers of one kind plus the text with every such tag removed."""

    markers: list[M]
    cleaned_text: str


def is_local_path(path: str) -> bool:
    """Return True when ``path`` looks like a file on this host."""

    if path.startswith(URI_PREFIXES):
        return True
    if _POSIX_PATH_RE.match(path):
        return True
    return bool(_WINDOWS_PATH_RE.match(path))


def to_local_path(raw: str) -> str:
    """Strip a URI-style prefix and percent-decode the remainder."""

    path = raw
    if path.startswith("file://"):
        path = path[len("file://") :]
    elif path.startswith("MEDIA:"):
        path = path[len("MEDIA:") :]
    elif path.startswith("attachment://"):
        path = path[len("attachment://") :]
    return unquote(path)


def find_markdown_images(text: str) -> list[ImagePath]:
    images: list[ImagePath] = []
    for match in LOCAL_IMAGE_RE.finditer(text):
        # Models sometimes escape spaces in paths
        raw_path = match.group(2).replace("\\ ", " ")
        images.append(
            ImagePath(
                alt_text=match.group(1),
                raw_path=raw_path,
                start=match.start(),
                end=match.end(),
            )
        )
    return images


def _marker_spans(text: str) -> list[tuple[int, int]]:
    return [
        match.span()
        for pattern in (VIDEO_MARKER_RE, AUDIO_MARKER_RE, FILE_MARKER_RE)
        for match in pattern.finditer(text)
    ]


def find_bare_image_paths(text: str) -> list[ImagePath]:
    """Local image paths written as plain text, outside ``![..](..)`` and media tags."""

    spans = _marker_spans(text)
    images: list[ImagePath] = []
    for match in BARE_IMAGE_PATH_RE.finditer(text):
        # A tag payload path belongs to that tag's pipeline
        if any(start <= match.start() < end for start, end in spans):
            continue
        before = text[max(0, match.start() - _MARKDOWN_LOOKBEHIND) : match.start()]
        if "](" in before:
            continue
        images.append(
            ImagePath(
                alt_text="",
                raw_path=match.group(1),
                start=match.start(),
                end=match.end(),
            )
        )
    return images


def _scan(
    text: str,
    pattern: re.Pattern[str],
    build: Callable[[dict], M | None],
    kind: str,
) -> MarkerScan[M]:
    markers: list[M] = []
    for match in pattern.finditer(text):
        try:
            payload = json.loads(match.group(1))
        except json.JSONDecodeError as exc:
            logger.warning("Skipping malformed %s marker: %s", kind, exc)
            continue
        if not isinstance(payload, dict):
            logger.warning("Skipping %s marker with non-object payload", kind)
            continue
        marker = build(payload)
        if marker is None:
            logger.warning("Skipping %s marker missing required fields: %s", kind, payload)
            continue
        markers.append(marker)
    cleaned = pattern.sub("", text).strip()
    return MarkerScan(markers=markers, cleaned_text=cleaned)


def _build_video(payload: dict) -> VideoMarker | None:
    path = payload.get("path")
    return VideoMarker(path=path) if isinstance(path, str) and path else None


def _build_audio(payload: dict) -> AudioMarker | None:
    path = payload.get("path")
    return AudioMarker(path=path) if isinstance(path, str) and path else None


def _build_file(payload: dict) -> FileMarker | None:
    path = payload.get("path")
    file_name = payload.get("fileName")
    if not (isinstance(path, str) and path and isinstance(file_name, str) and file_name):
        return None
    file_type = payload.get("fileType")
    if not isinstance(file_type, str) or not file_type:
        file_type = file_name.rsplit(".", 1)[-1] if "." in file_name else ""
    return FileMarker(path=path, file_name=file_name, file_type=file_type)


def scan_video_markers(text: str) -> MarkerScan[VideoMarker]:
    return _scan(text, VIDEO_MARKER_RE, _build_video, "video")


def scan_audio_markers(text: str) -> MarkerScan[AudioMarker]:
    return _scan(text, AUDIO_MARKER_RE, _build_audio, "audio")


def scan_file_markers(text: str) -> MarkerScan[FileMarker]:
    return _scan(text, FILE_MARKER_RE, _build_file, "file")


def strip_media_markers(text: str) -> str:
    """Remove video/audio/file tags for display, including a half-written one."""

    for pattern in (FILE_MARKER_RE, VIDEO_MARKER_RE, AUDIO_MARKER_RE):
        text = pattern.sub("", text)
    text = _UNTERMINATED_MARKER_RE.sub("", text)
    return text.strip()


def build_media_system_prompt() -> str:
    return f"""## 钉钉图片和文件显示规则

你正在钉钉中与用户对话。

### 一、图片显示

显示图片时，直接使用本地文件路径，系统会自动上传处理。

**正确方式**：
```markdown
![描述](file:///path/to/image.jpg)
![描述](/tmp/screenshot.png)
![描述](/Users/xxx/photo.jpg)
```

**禁止**：
- 不要自己执行 curl 上传
- 不要猜测或构造 URL
- **不要对路径进行转义（如使用反斜杠 \\ ）**

直接输出本地路径即可，系统会自动上传到钉钉。

### 二、视频分享

**何时分享视频**：
- ✅ 用户明确要求**分享、发送、上传**视频时
- ❌ 仅生成视频保存到本地时，**不需要**分享

**视频标记格式**：
当需要分享视频时，在回复**末尾**添加：

```
[{VIDEO_TAG}]{{"path":"<本地视频路径>"}}[/{VIDEO_TAG}]
```

**支持格式**：mp4（最大 20MB）

**重要**：
- 视频大小不得超过 20MB，超过限制时告知用户
- 仅支持 mp4 格式
- 系统会自动提取视频时长、分辨率并生成封面

### 三、音频分享

**何时分享音频**：
- ✅ 用户明确要求**分享、发送、上传**音频/语音文件时
- ❌ 仅生成音频保存到本地时，**不需要**分享

**音频标记格式**：
当需要分享音频时，在回复**末尾**添加：

```
[{AUDIO_TAG}]{{"path":"<本地音频路径>"}}[/{AUDIO_TAG}]
```

**支持格式**：ogg、amr（最大 20MB）

**重要**：
- 音频大小不得超过 20MB，超过限制时告知用户
- 系统会自动提取音频时长

### 四、文件分享

**何时分享文件**：
- ✅ 用户明确要求**分享、发送、上传**文件时
- ❌ 仅生成文件保存到本地时，**不需要**分享

**文件标记格式**：
当需要分享文件时，在回复**末尾**添加：

```
[{FILE_TAG}]{{"path":"<本地文件路径>","fileName":"<文件名>","fileType":"<扩展名>"}}[/{FILE_TAG}]
```

**支持的文件类型**：几乎所有常见格式

**重要**：文件大小不得超过 20MB，超过限制时告知用户文件过大。"""


__all__ = [
    "AUDIO_MARKER_RE",
    "AUDIO_TAG",
    "AudioMarker",
    "BARE_IMAGE_PATH_RE",
    "FILE_MARKER_RE",
    "FILE_TAG",
    "FileMarker",
    "IMAGE_EXTENSIONS",
    "ImagePath",
    "LOCAL_IMAGE_RE",
    "MarkerScan",
    "POSIX_ROOTS",
    "URI_PREFIXES",
    "VIDEO_MARKER_RE",
    "VIDEO_TAG",
    "VideoMarker",
    "build_media_system_prompt",
    "find_bare_image_paths",
    "find_markdown_images",
    "is_local_path",
    "scan_audio_markers",
    "scan_file_markers",
    "scan_video_markers",
    "strip_media_markers",
    "to_local_path",
]
