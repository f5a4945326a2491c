"""Inbound media materialization into the public-serving directory."""

from __future__ import annotations

import binascii
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from zapbridge.channels.wuzapi import storage
from zapbridge.channels.wuzapi.client import ProviderGateway, decode_data_url
from zapbridge.channels.wuzapi.models import InlineMedia, MediaDescriptor, MessageKind
from zapbridge.channels.wuzapi.transcode import Transcoder
from zapbridge.errors import MediaDownloadError, TranscodeFailure

logger = logging.getLogger(__name__)

OGG_EXTENSIONS = {"ogg", "oga", "opus"}
FLASH_VIDEO_EXTENSIONS = {"f4v"}


@dataclass(frozen=True, slots=True)
class MaterializedMedia:
    stored_file_name: str
    media_kind: str


def decode_inline_payload(encoded: str) -> bytes:
    try:
        data = decode_data_url(encoded)
    except (binascii.Error, ValueError) as exc:
        raise MediaDownloadError("media_payload_undecodable") from exc
    if not data:
        raise MediaDownloadError("media_payload_empty")
    return data


def _is_ogg_audio(mime_type: str, extension: str) -> bool:
    return mime_type.startswith("audio/ogg") or extension in OGG_EXTENSIONS


def _is_flash_video(mime_type: str, extension: str) -> bool:
    return "f4v" in mime_type or extension in FLASH_VIDEO_EXTENSIONS


class MediaMaterializer:
    """Writes one media payload to the public directory and returns its bare name.

    Remote video references are decoded by the gateway and always land as MP4.
    Inline payloads are written under their declared extension; Ogg audio and
    flash video are then transcoded to MP4, keeping the original file when the
    transcoder fails.
    """

    def __init__(self, media_root: Path, transcoder: Transcoder) -> None:
        self._root = media_root
        self._transcoder = transcoder

    async def materialize(
        self, descriptor: MediaDescriptor, gateway: ProviderGateway
    ) -> MaterializedMedia:
        descriptor.validate()
        if descriptor.remote is not None:
            return await self._materialize_remote(descriptor, gateway)
        if descriptor.inline is None:
            raise MediaDownloadError("media_descriptor_invalid")
        return await self._materialize_inline(descriptor.inline)

    def discard(self, stored_file_name: str) -> None:
        """Remove a materialized file no stored message will reference."""
        storage.resolve_media_output_path(self._root, stored_file_name).unlink(missing_ok=True)
        logger.info("Discarded unreferenced media %s", stored_file_name)

    async def _materialize_remote(
        self, descriptor: MediaDescriptor, gateway: ProviderGateway
    ) -> MaterializedMedia:
        if descriptor.kind is not MessageKind.VIDEO or descriptor.remote is None:
            # only the video decode endpoint is known to work for remote references
            raise MediaDownloadError("remote_media_unsupported")
        data = await gateway.download_remote_video(descriptor.remote)
        if not data:
            raise MediaDownloadError("media_download_empty")
        name = storage.generated_file_name(descriptor.file_name or "video", "mp4")
        storage.write_public_file(self._root, name, data)
        logger.info("Remote video materialized as %s (%d bytes)", name, len(data))
        return MaterializedMedia(stored_file_name=name, media_kind="video")

    async def _materialize_inline(self, inline: InlineMedia) -> MaterializedMedia:
        data = decode_inline_payload(inline.encoded_data)
        mime_type = inline.mime_type.strip().lower()
        extension = storage.extension_for(inline.file_name, mime_type)
        name = storage.generated_file_name(inline.file_name, extension)
        path = storage.write_public_file(self._root, name, data)
        media_kind = mime_type.split("/", 1)[0] or "application"

        if _is_ogg_audio(mime_type, extension):
            name = await self._transcode_or_keep(path, self._transcoder.audio_to_mp4)
        elif _is_flash_video(mime_type, extension):
            name = await self._transcode_or_keep(path, self._transcoder.video_to_mp4)

        logger.info("Inline %s materialized as %s", media_kind, name)
        return MaterializedMedia(stored_file_name=name, media_kind=media_kind)

    async def _transcode_or_keep(
        self, source: Path, transcode: Callable[[Path, Path], Awaitable[None]]
    ) -> str:
        target = source.with_suffix(".mp4")
        if target == source:
            # ffmpeg cannot write over its own input
            target = source.with_name(storage.generated_file_name(source.name, "mp4"))
        try:
            await transcode(source, target)
        except TranscodeFailure as exc:
            target.unlink(missing_ok=True)
            logger.warning(
                "Transcode of %s failed (%s); keeping original", source.name, exc.reason
            )
            return source.name
        source.unlink(missing_ok=True)
        return target.name
