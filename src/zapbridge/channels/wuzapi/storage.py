"""Public-serving media directory helpers."""

from __future__ import annotations

import os
import re
import time
from pathlib import Path
from urllib.parse import urlparse

from zapbridge.config import Settings
from zapbridge.errors import MediaDownloadError
from zapbridge.ids import random_suffix

PUBLIC_PREFIX = "/public/"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")

_MIME_EXTENSIONS: dict[str, str] = {
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/aac": "aac",
    "audio/wav": "wav",
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "video/mp4": "mp4",
    "video/x-f4v": "f4v",
    "video/3gpp": "3gp",
    "application/pdf": "pdf",
}


def _commonpath_contains(parent: Path, child: Path) -> bool:
    try:
        return os.path.commonpath([str(parent), str(child)]) == str(parent)
    except ValueError:
        return False


def ensure_media_root(public_dir: str) -> Path:
    root = Path(public_dir).expanduser().resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def resolve_media_output_path(media_root: Path, relative_name: str) -> Path:
    target = (media_root / relative_name).resolve()
    if target == media_root or not _commonpath_contains(media_root, target):
        raise MediaDownloadError("media_path_unsafe")
    return target


def extension_for(file_name: str, mime_type: str) -> str:
    """Declared extension of the file name, else one derived from the mime type."""
    suffix = Path(file_name).suffix.lstrip(".").lower()
    if suffix and _UNSAFE_CHARS.search(suffix) is None:
        return suffix
    base_mime = mime_type.split(";", 1)[0].strip().lower()
    return _MIME_EXTENSIONS.get(base_mime, "bin")


def generated_file_name(original_name: str, extension: str, *, now: float | None = None) -> str:
    """Collision-resistant bare name: ``<stem>-<millis>-<suffix>.<ext>``."""
    stem = _UNSAFE_CHARS.sub("_", Path(original_name).stem)[:60] or "media"
    millis = int((time.time() if now is None else now) * 1000)
    return f"{stem}-{millis}-{random_suffix()}.{extension}"


def write_public_file(media_root: Path, file_name: str, data: bytes) -> Path:
    target = resolve_media_output_path(media_root, file_name)
    try:
        target.write_bytes(data)
    except OSError as exc:
        target.unlink(missing_ok=True)
        raise MediaDownloadError("media_write_failed") from exc
    return target


def stored_name(file_name: str) -> str:
    """Strip a ``/public/`` prefix a legacy row may carry."""
    if file_name.startswith(PUBLIC_PREFIX):
        return file_name[len(PUBLIC_PREFIX) :]
    return file_name.lstrip("/")


def backend_base_url(settings: Settings) -> str:
    """BACKEND_URL, with PROXY_PORT appended when the URL names no port."""
    base = settings.backend_url.rstrip("/")
    if urlparse(base).port is None and settings.proxy_port.strip():
        base = f"{base}:{settings.proxy_port.strip()}"
    return base


def public_media_url(file_name: str, settings: Settings) -> str:
    """Fetchable URL of a stored file, for the provider and for API payloads."""
    if urlparse(file_name).scheme in {"http", "https"}:
        return file_name
    return f"{backend_base_url(settings)}{PUBLIC_PREFIX}{stored_name(file_name)}"
