"""Outbound dispatch: application sends to the provider, recorded under a pre-assigned id."""

from __future__ import annotations

import logging
import math
import shutil
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from zapbridge.channels.wuzapi import identity, storage
from zapbridge.channels.wuzapi.client import VOICE_NOTE_MIME, ProviderGateway, WuzapiClient
from zapbridge.channels.wuzapi.ingest import (
    Notifier,
    message_payload,
    ticket_channel,
    ticket_summary,
)
from zapbridge.channels.wuzapi.media import OGG_EXTENSIONS
from zapbridge.channels.wuzapi.models import (
    AckLevel,
    FileUpload,
    Instance,
    Message,
    MessageKind,
    OutboundContent,
    RemoteMediaContent,
    TextContent,
)
from zapbridge.channels.wuzapi.transcode import FfmpegTranscoder, Transcoder
from zapbridge.config import Settings
from zapbridge.db import queries
from zapbridge.db.connection import get_conn
from zapbridge.ids import new_correlation_id
from zapbridge.logging import bound_context
from zapbridge.routes import ws
from zapbridge.tickets.service import SqliteTicketService, Ticket, TicketService, format_body

logger = logging.getLogger(__name__)


def upload_kind(mime_type: str) -> MessageKind:
    major = mime_type.split("/", 1)[0].strip().lower()
    if major == "image":
        return MessageKind.IMAGE
    if major == "video":
        return MessageKind.VIDEO
    if major == "audio":
        return MessageKind.VOICE_NOTE
    return MessageKind.DOCUMENT


def estimate_duration_seconds(size_bytes: int) -> int:
    """Byte-length heuristic for a 16 KiB/s voice-note stream."""
    return max(1, math.ceil(size_bytes / 1024 / 16))


@dataclass(frozen=True, slots=True)
class _Sent:
    body: str
    media_type: str
    media_url: str | None = None
    file_name: str | None = None
    quoted_msg_id: str | None = None


class OutboundDispatchPipeline:
    def __init__(
        self,
        *,
        gateway: ProviderGateway,
        tickets: TicketService,
        transcoder: Transcoder,
        media_root: Path,
        settings: Settings,
        notify: Notifier = ws.notify,
        id_factory: Callable[[], str] = new_correlation_id,
    ) -> None:
        self._gateway = gateway
        self._tickets = tickets
        self._transcoder = transcoder
        self._root = media_root
        self._settings = settings
        self._notify = notify
        self._id_factory = id_factory

    @classmethod
    def for_instance(
        cls,
        instance: Instance,
        settings: Settings,
        *,
        gateway: ProviderGateway | None = None,
    ) -> OutboundDispatchPipeline:
        return cls(
            gateway=gateway or WuzapiClient.for_instance(instance, settings),
            tickets=SqliteTicketService(),
            transcoder=FfmpegTranscoder.from_settings(settings),
            media_root=storage.ensure_media_root(settings.public_dir),
            settings=settings,
        )

    async def send(self, ticket: Ticket, content: OutboundContent) -> Message:
        """Send through the gateway, then persist under the id the gateway was given.

        Raises ``GatewayDispatchError`` (nothing persisted) or ``TranscodeFailure``
        when an audio upload cannot be turned into a voice note.
        """
        message_id = self._id_factory()
        phone = identity.address_number(ticket.contact.address)
        with bound_context(message_id=message_id, ticket_id=ticket.id):
            if isinstance(content, TextContent):
                sent = await self._send_text(phone, ticket, content, message_id)
            elif isinstance(content, FileUpload):
                try:
                    sent = await self._send_upload(phone, ticket, content, message_id)
                finally:
                    content.path.unlink(missing_ok=True)
            elif isinstance(content, RemoteMediaContent):
                sent = await self._send_remote(phone, ticket, content, message_id)
            else:
                raise TypeError(f"unsupported outbound content: {type(content).__name__}")
            return self._persist(ticket, message_id, sent)

    async def _send_text(
        self, phone: str, ticket: Ticket, content: TextContent, message_id: str
    ) -> _Sent:
        body = format_body(content.body, ticket.contact)
        await self._gateway.send_text(phone, body, message_id=message_id)
        return _Sent(
            body=body, media_type=MessageKind.TEXT.value, quoted_msg_id=content.quoted_msg_id
        )

    async def _send_remote(
        self, phone: str, ticket: Ticket, content: RemoteMediaContent, message_id: str
    ) -> _Sent:
        caption = format_body(content.caption, ticket.contact)
        await self._gateway.send_media(
            phone,
            content.url,
            kind=content.kind,
            caption=caption,
            file_name=content.file_name,
            message_id=message_id,
        )
        return _Sent(
            body=caption,
            media_type=content.kind.value,
            media_url=content.url,
            file_name=content.file_name,
        )

    async def _send_upload(
        self, phone: str, ticket: Ticket, content: FileUpload, message_id: str
    ) -> _Sent:
        caption = format_body(content.caption, ticket.contact)
        kind = upload_kind(content.mime_type)
        if kind is MessageKind.VOICE_NOTE:
            return await self._send_voice_note(phone, caption, content, message_id)

        extension = storage.extension_for(content.file_name, content.mime_type)
        name = storage.generated_file_name(content.file_name, extension)
        target = storage.resolve_media_output_path(self._root, name)
        shutil.copyfile(content.path, target)
        try:
            await self._gateway.send_media(
                phone,
                storage.public_media_url(name, self._settings),
                kind=kind,
                caption=caption,
                file_name=content.file_name,
                message_id=message_id,
            )
        except Exception:
            target.unlink(missing_ok=True)
            raise
        return _Sent(
            body=caption or content.file_name,
            media_type=kind.value,
            media_url=name,
            file_name=content.file_name,
        )

    async def _send_voice_note(
        self, phone: str, caption: str, content: FileUpload, message_id: str
    ) -> _Sent:
        name = storage.generated_file_name(content.file_name, "ogg")
        target = storage.resolve_media_output_path(self._root, name)
        source_extension = Path(content.file_name).suffix.lstrip(".").lower()
        already_opus = (
            content.mime_type.lower().startswith("audio/ogg") or source_extension in OGG_EXTENSIONS
        )
        try:
            if already_opus:
                shutil.copyfile(content.path, target)
            else:
                await self._transcoder.audio_to_voice_note(content.path, target)
            audio = target.read_bytes()
            probed = await self._transcoder.probe_duration(target)
            seconds = math.ceil(probed) if probed else estimate_duration_seconds(len(audio))
            await self._gateway.send_voice_note(
                phone,
                audio,
                mime_type=VOICE_NOTE_MIME,
                duration_seconds=seconds,
                message_id=message_id,
            )
        except Exception:
            target.unlink(missing_ok=True)
            raise
        logger.info("Voice note %s sent (%ss)", name, seconds)
        return _Sent(
            body=caption or content.file_name,
            media_type=MessageKind.VOICE_NOTE.value,
            media_url=name,
            file_name=content.file_name,
        )

    def _persist(self, ticket: Ticket, message_id: str, sent: _Sent) -> Message:
        message = Message(
            id=message_id,
            ticket_id=ticket.id,
            contact_id=None,
            body=sent.body,
            media_type=sent.media_type,
            created_at=datetime.now(UTC),
            from_me=True,
            read=True,
            ack=AckLevel.SERVER,
            media_url=sent.media_url,
            file_name=sent.file_name,
            quoted_msg_id=sent.quoted_msg_id,
        )
        with get_conn() as conn:
            inserted = queries.insert_message_if_absent(conn, message)
            if not inserted:
                # the provider echo won the race; keep the row it created
                message = queries.get_message(conn, message_id) or message
        try:
            self._tickets.update_last_message(ticket.id, ticket_summary(message))
        except sqlite3.Error:
            logger.exception(
                "Ticket %s summary update failed after sending %s", ticket.id, message_id
            )
        self._notify(
            ticket_channel(ticket.id),
            {
                "event": "appMessage",
                "action": "create",
                "message": message_payload(message, self._settings),
            },
        )
        logger.info("Outbound message %s stored on ticket %s", message_id, ticket.id)
        return message
