from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import pytest

from dingtalk_connector.media.markers import AUDIO_TAG, FILE_TAG, VIDEO_TAG
from dingtalk_connector.media.probe import VideoMetadata, temporary_thumbnail
from dingtalk_connector.media.processors import (
    PLACEHOLDER_VOICE_DURATION_MS,
    MediaPostProcessor,
    append_statuses,
    is_audio_file,
)
from dingtalk_connector.services.messaging import Dispatcher, DispatchError


class RecordingDispatcher(Dispatcher):
    label = "test"

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[tuple[str, tuple[Any, ...]]] = []
        self.fail = fail

    async def _record(self, kind: str, *args: Any) -> None:
        if self.fail:
            raise DispatchError("robot offline")
        self.sent.append((kind, args))

    async def send_text(self, text, *, at_user_id=None):
        await self._record("text", text, at_user_id)

    async def send_markdown(self, title, text, *, at_user_id=None):
        await self._record("markdown", title, text, at_user_id)

    async def send_video(self, video_media_id, pic_media_id, duration_seconds):
        await self._record("video", video_media_id, pic_media_id, duration_seconds)

    async def send_voice(self, media_id, duration_ms):
        await self._record("voice", media_id, duration_ms)

    async def send_file(self, media_id, file_name, file_type):
        await self._record("file", media_id, file_name, file_type)


class FakeUploader:
    """Returns ``@<kind>-<name>`` unless the kind or file name is listed as failing."""

    def __init__(self, fail: tuple[str, ...] = ()) -> None:
        self.fail = fail
        self.calls: list[tuple[str, str]] = []

    async def upload(self, local_path, kind, token, max_bytes=0) -> Optional[str]:
        name = Path(local_path).name
        self.calls.append((kind, name))
        if not token or kind in self.fail or name in self.fail:
            return None
        return f"@{kind}-{name}"


async def fake_probe_video(path: str) -> VideoMetadata:
    return VideoMetadata(duration=12, width=640, height=360)


async def fake_probe_duration(path: str) -> float:
    return 3.5


class ThumbnailRecorder:
    def __init__(self) -> None:
        self.paths: list[Path] = []

    async def __call__(self, video_path: str, output_path: Path) -> bool:
        output_path.write_bytes(b"jpeg")
        self.paths.append(output_path)
        return True


def make_processor(uploader: FakeUploader, **overrides: Any) -> MediaPostProcessor:
    options: dict[str, Any] = {
        "probe_video": fake_probe_video,
        "probe_duration": fake_probe_duration,
        "generate_thumbnail": ThumbnailRecorder(),
        "thumbnail_factory": temporary_thumbnail,
    }
    options.update(overrides)
    return MediaPostProcessor(uploader, **options)


def video_marker(path: Path | str) -> str:
    return f'[{VIDEO_TAG}]{{"path":"{path}"}}[/{VIDEO_TAG}]'


def audio_marker(path: Path | str) -> str:
    return f'[{AUDIO_TAG}]{{"path":"{path}"}}[/{AUDIO_TAG}]'


def file_marker(path: Path | str, name: str) -> str:
    return f'[{FILE_TAG}]{{"path":"{path}","fileName":"{name}"}}[/{FILE_TAG}]'


def test_append_statuses() -> None:
    assert append_statuses("body", []) == "body"
    assert append_statuses("body", ["a", "b"]) == "body\n\na\nb"
    assert append_statuses("", ["a"]) == "a"


@pytest.mark.parametrize(
    ("file_type", "expected"),
    [("mp3", True), (".OGG", True), ("m4a", True), ("pdf", False), ("", False)],
)
def test_is_audio_file(file_type: str, expected: bool) -> None:
    assert is_audio_file(file_type) is expected


@pytest.mark.asyncio
async def test_video_upload_failure_cleans_thumbnail(tmp_path) -> None:
    clip = tmp_path / "clip.mp4"
    clip.write_bytes(b"video")
    thumbnails = ThumbnailRecorder()
    processor = make_processor(FakeUploader(fail=("video",)), generate_thumbnail=thumbnails)
    dispatcher = RecordingDispatcher()

    result = await processor.process(f"Here.\n{video_marker(clip)}", dispatcher, "tok")

    assert result == "Here.\n\n⚠️ 视频上传失败: clip.mp4（文件可能超过 20MB 限制）"
    assert dispatcher.sent == []
    assert len(thumbnails.paths) == 1
    assert not thumbnails.paths[0].exists()


@pytest.mark.asyncio
async def test_video_sent_with_cover_and_duration(tmp_path) -> None:
    clip = tmp_path / "clip.mp4"
    clip.write_bytes(b"video")
    uploader = FakeUploader()
    thumbnails = ThumbnailRecorder()
    processor = make_processor(uploader, generate_thumbnail=thumbnails)
    dispatcher = RecordingDispatcher()

    result = await processor.process(video_marker(clip), dispatcher, "tok")

    thumb_name = thumbnails.paths[0].name
    assert dispatcher.sent == [("video", ("@video-clip.mp4", f"@image-{thumb_name}", 12))]
    assert result == "✅ 视频已发送: clip.mp4"
    assert not thumbnails.paths[0].exists()


@pytest.mark.asyncio
async def test_video_probe_failure_reports_ffmpeg(tmp_path) -> None:
    clip = tmp_path / "clip.mp4"
    clip.write_bytes(b"video")

    async def no_metadata(path: str) -> None:
        return None

    processor = make_processor(FakeUploader(), probe_video=no_metadata)

    result = await processor.process(video_marker(clip), RecordingDispatcher(), "tok")

    assert result == "⚠️ 视频处理失败: clip.mp4（无法读取视频信息，请检查 ffmpeg 是否已安装）"


@pytest.mark.asyncio
async def test_missing_video_reported_even_without_token(tmp_path) -> None:
    processor = make_processor(FakeUploader())

    result = await processor.process(
        f"Text {video_marker(tmp_path / 'gone.mp4')}", RecordingDispatcher(), None
    )

    assert result == "Text\n\n⚠️ 视频文件不存在: gone.mp4"


@pytest.mark.asyncio
async def test_audio_marker_uses_probed_duration_and_file_marker_uses_placeholder(
    tmp_path,
) -> None:
    voice = tmp_path / "voice.ogg"
    voice.write_bytes(b"ogg")
    song = tmp_path / "song.mp3"
    song.write_bytes(b"mp3")
    processor = make_processor(FakeUploader())
    dispatcher = RecordingDispatcher()

    text = f"{audio_marker(voice)}{file_marker(song, 'song.mp3')}"
    result = await processor.process(text, dispatcher, "tok")

    assert dispatcher.sent == [
        ("voice", ("@voice-voice.ogg", 3500)),
        ("voice", ("@voice-song.mp3", PLACEHOLDER_VOICE_DURATION_MS)),
    ]
    assert result == "✅ 音频已发送: voice.ogg\n✅ 音频已发送: song.mp3"


@pytest.mark.asyncio
async def test_statuses_follow_kind_order(tmp_path) -> None:
    clip = tmp_path / "clip.mp4"
    clip.write_bytes(b"v")
    doc = tmp_path / "report.pdf"
    doc.write_bytes(b"%PDF")
    voice = tmp_path / "voice.ogg"
    voice.write_bytes(b"ogg")
    processor = make_processor(FakeUploader())
    dispatcher = RecordingDispatcher()

    text = (
        f"Summary {file_marker(doc, 'report.pdf')} {audio_marker(voice)} "
        f"{video_marker(clip)}"
    )
    result = await processor.process(text, dispatcher, "tok")

    assert [kind for kind, _ in dispatcher.sent] == ["video", "voice", "file"]
    assert dispatcher.sent[2] == ("file", ("@file-report.pdf", "report.pdf", "pdf"))
    assert result.splitlines()[-3:] == [
        "✅ 视频已发送: clip.mp4",
        "✅ 音频已发送: voice.ogg",
        "✅ 文件已发送: report.pdf",
    ]
    assert result.startswith("Summary")
    assert "DINGTALK" not in result


@pytest.mark.asyncio
async def test_oversize_file_reported_without_upload(tmp_path) -> None:
    big = tmp_path / "big.zip"
    big.write_bytes(b"x" * (3 * 1024 * 1024 // 2))
    uploader = FakeUploader()
    processor = make_processor(uploader, max_bytes=1024 * 1024)

    result = await processor.process(file_marker(big, "big.zip"), RecordingDispatcher(), "tok")

    assert result == "⚠️ 文件过大无法发送: big.zip（1.5MB，限制 1MB）"
    assert uploader.calls == []


@pytest.mark.asyncio
async def test_dispatch_failure_becomes_status_line(tmp_path) -> None:
    doc = tmp_path / "a.txt"
    doc.write_text("hi")
    processor = make_processor(FakeUploader())

    result = await processor.process(
        file_marker(doc, "a.txt"), RecordingDispatcher(fail=True), "tok"
    )

    assert result == "⚠️ 文件发送失败: a.txt（robot offline）"


@pytest.mark.asyncio
async def test_markdown_images_rewritten_and_failures_fall_back_to_alt(tmp_path) -> None:
    good = tmp_path / "good.png"
    good.write_bytes(b"png")
    bad = tmp_path / "bad.png"
    bad.write_bytes(b"png")
    processor = make_processor(FakeUploader(fail=("bad.png",)))

    text = f"A ![chart]({good}) B ![broken]({bad}) C"
    result = await processor.process(text, RecordingDispatcher(), "tok")

    assert result == "A ![chart](@image-good.png) B broken C\n\n⚠️ 图片上传失败: bad.png"


@pytest.mark.asyncio
async def test_bare_image_paths_rewritten_back_to_front(tmp_path) -> None:
    first = tmp_path / "one.png"
    first.write_bytes(b"1")
    second = tmp_path / "two.jpg"
    second.write_bytes(b"2")
    processor = make_processor(FakeUploader())

    result = await processor.process(
        f"see {first} and `{second}` done", RecordingDispatcher(), "tok"
    )

    assert result == "see ![](@image-one.png) and ![](@image-two.jpg) done"


@pytest.mark.asyncio
async def test_images_untouched_without_token(tmp_path) -> None:
    image = tmp_path / "a.png"
    image.write_bytes(b"png")
    uploader = FakeUploader()
    processor = make_processor(uploader)
    text = f"look ![a]({image})"

    assert await processor.process(text, RecordingDispatcher(), None) == text
    assert uploader.calls == []


@pytest.mark.asyncio
async def test_image_sent_through_file_tag_goes_out_as_file(tmp_path) -> None:
    chart = tmp_path / "chart.png"
    chart.write_bytes(b"png")
    uploader = FakeUploader()
    dispatcher = RecordingDispatcher()
    processor = make_processor(uploader)

    result = await processor.process(
        f"See file {file_marker(chart, 'chart.png')}", dispatcher, "tok"
    )

    assert result == "See file\n\n✅ 文件已发送: chart.png"
    assert uploader.calls == [("file", "chart.png")]
    assert dispatcher.sent == [("file", ("@file-chart.png", "chart.png", "png"))]
