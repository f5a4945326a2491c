from pathlib import Path

import pytest

from zapbridge.channels.wuzapi import storage
from zapbridge.config import get_settings
from zapbridge.errors import MediaDownloadError


def test_resolve_media_output_path_rejects_traversal(tmp_path: Path) -> None:
    with pytest.raises(MediaDownloadError) as exc:
        storage.resolve_media_output_path(tmp_path, "../escape.txt")
    assert exc.value.reason == "media_path_unsafe"


def test_extension_prefers_file_name_then_mime() -> None:
    assert storage.extension_for("report.PDF", "application/octet-stream") == "pdf"
    assert storage.extension_for("voice", "audio/ogg; codecs=opus") == "ogg"
    assert storage.extension_for("blob", "application/x-unknown") == "bin"


def test_generated_file_name_is_sanitized_and_unique() -> None:
    first = storage.generated_file_name("my photo:1.jpg", "jpg", now=1700000000.0)
    second = storage.generated_file_name("my photo:1.jpg", "jpg", now=1700000000.0)
    assert first.startswith("my_photo_1-1700000000000-")
    assert first.endswith(".jpg")
    assert "/" not in first and ":" not in first
    assert first != second


def test_write_public_file(media_root: Path) -> None:
    path = storage.write_public_file(media_root, "a.txt", b"data")
    assert path.read_bytes() == b"data"
    assert path.parent == media_root


def test_stored_name_strips_public_prefix() -> None:
    assert storage.stored_name("/public/a.jpg") == "a.jpg"
    assert storage.stored_name("a.jpg") == "a.jpg"


def test_public_media_url_composition(monkeypatch) -> None:
    settings = get_settings()
    assert storage.public_media_url("a.jpg", settings) == "https://bridge.example/public/a.jpg"
    assert (
        storage.public_media_url("/public/a.jpg", settings)
        == "https://bridge.example/public/a.jpg"
    )
    assert storage.public_media_url("https://cdn.example/x.png", settings) == (
        "https://cdn.example/x.png"
    )

    monkeypatch.setenv("BACKEND_URL", "http://bridge.local")
    monkeypatch.setenv("PROXY_PORT", "8443")
    get_settings.cache_clear()
    assert storage.backend_base_url(get_settings()) == "http://bridge.local:8443"

    monkeypatch.setenv("BACKEND_URL", "http://bridge.local:9000/")
    get_settings.cache_clear()
    assert storage.backend_base_url(get_settings()) == "http://bridge.local:9000"
