"""Upload local files to DingTalk's media store."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Literal, Optional

import httpx

from ..config import DEFAULT_MEDIA_MAX_BYTES
from .markers import to_local_path

logger = logging.getLogger(__name__)

MediaKind = Literal["image", "file", "video", "voice"]

UPLOAD_TIMEOUT_SECONDS = 60.0


def _format_mb(size: int, digits: int = 2) -> str:
    return f"{size / (1024 * 1024):.{digits}f}"


class MediaUploader:
    """Push a file to ``/media/upload`` and return its ``media_id``.

    Every failure (missing file, oversize, transport error, unexpected
    response) is logged and reported as ``None``; callers skip the item.
    The source file is never modified.
    """

    def __init__(self, http_client: httpx.AsyncClient, oapi_base_url: str) -> None:
        self._http = http_client
        self._base_url = oapi_base_url.rstrip("/")

    async def upload(
        self,
        local_path: str,
        kind: MediaKind,
        token: Optional[str],
        max_bytes: int = DEFAULT_MEDIA_MAX_BYTES,
    ) -> Optional[str]:
        if not token:
            logger.warning("[%s] No upload token, skipping %s", kind, local_path)
            return None

        path = Path(to_local_path(local_path))
        if not path.is_file():
            logger.warning("[%s] File not found: %s", kind, path)
            return None

        size = path.stat().st_size
        if size > max_bytes:
            logger.warning(
                "[%s] File too large: %s (%sMB, limit %sMB)",
                kind,
                path,
                _format_mb(size),
                _format_mb(max_bytes, 0),
            )
            return None

        content_type = "image/jpeg" if kind == "image" else "application/octet-stream"
        logger.info("[%s] Uploading %s (%sMB)", kind, path, _format_mb(size))
        try:
            data = await asyncio.to_thread(path.read_bytes)
            response = await self._http.post(
                f"{self._base_url}/media/upload",
                params={"access_token": token, "type": kind},
                files={"media": (path.name, data, content_type)},
                timeout=UPLOAD_TIMEOUT_SECONDS,
            )
            body = response.json()
        except (httpx.HTTPError, OSError, ValueError) as exc:
            logger.error("[%s] Upload failed for %s: %s", kind, path, exc)
            return None

        media_id = body.get("media_id") if isinstance(body, dict) else None
        if not media_id:
            logger.warning("[%s] Upload response without media_id: %s", kind, body)
            return None

        logger.info("[%s] Uploaded %s as media_id=%s", kind, path.name, media_id)
        return media_id


__all__ = ["MediaKind", "MediaUploader", "UPLOAD_TIMEOUT_SECONDS"]
