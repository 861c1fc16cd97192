from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import unquote, urlparse

import httpx

from .errors import FetchError

logger = logging.getLogger(__name__)


@dataclass
class StoragePaths:
    root: Path

    def lesson_dir(self, lesson_id: str) -> Path:
        return self.root / "lessons" / str(lesson_id)

    def upload_path(self, lesson_id: str, filename: str) -> Path:
        return self.lesson_dir(lesson_id) / "source" / Path(filename).name


class LocalUploadStorage:
    """
    Filesystem layout for uploaded lesson sources. Producers save the upload
    here and enqueue a `file://` reference to it.
    """

    def __init__(self, storage_paths: StoragePaths):
        self.paths = storage_paths

    def save_upload(self, lesson_id: str, filename: str, data: bytes) -> Path:
        target = self.paths.upload_path(lesson_id, filename)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return target


class SourceFetcher(Protocol):
    def fetch_bytes(self, ref: str) -> bytes:
        ...


class HttpSourceFetcher:
    """
    Resolves a source reference to bytes. `http(s)://` refs are downloaded
    with a bounded timeout; `file://` refs and bare paths are read from disk,
    optionally confined to `local_root`.
    """

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        local_root: Optional[Path] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.local_root = local_root.resolve() if local_root else None
        self._client = client

    def fetch_bytes(self, ref: str) -> bytes:
        if not ref:
            raise FetchError("Empty source reference")
        parsed = urlparse(ref)
        if parsed.scheme in ("http", "https"):
            return self._fetch_remote(ref)
        if parsed.scheme == "file":
            return self._read_local(Path(unquote(parsed.path)))
        if parsed.scheme and len(parsed.scheme) > 1:
            raise FetchError(f"Unsupported source scheme: {parsed.scheme}")
        return self._read_local(Path(ref))

    def _fetch_remote(self, url: str) -> bytes:
        try:
            if self._client is not None:
                response = self._client.get(url, timeout=self.timeout_seconds, follow_redirects=True)
            else:
                with httpx.Client(timeout=self.timeout_seconds, follow_redirects=True) as client:
                    response = client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise FetchError(f"Source download returned HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"Source unreachable: {exc.__class__.__name__}") from exc
        if not response.content:
            raise FetchError("Source download returned no content")
        logger.debug("Fetched %s bytes from %s", len(response.content), url)
        return response.content

    def _read_local(self, path: Path) -> bytes:
        resolved = path.resolve()
        if self.local_root and self.local_root not in resolved.parents and resolved != self.local_root:
            raise FetchError(f"Source path outside storage root: {path}")
        if not resolved.is_file():
            raise FetchError(f"Source file not found: {path}")
        try:
            return resolved.read_bytes()
        except OSError as exc:
            raise FetchError(f"Source file unreadable: {exc.strerror or exc}") from exc


def guess_mime_type(ref: str, default: str = "application/octet-stream") -> str:
    path = urlparse(ref).path or ref
    guessed, _ = mimetypes.guess_type(path)
    return guessed or default


def sniff_image_mime_type(data: bytes, fallback: str = "image/jpeg") -> str:
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data.startswith(b"\xff\xd8"):
        return "image/jpeg"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return fallback
