"""Inbound ingestion: adapted provider events to persisted messages."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from typing import Any

from zapbridge.channels.wuzapi import storage
from zapbridge.channels.wuzapi.adapter import ReadReceipt
from zapbridge.channels.wuzapi.client import ProviderGateway
from zapbridge.channels.wuzapi.media import MediaMaterializer
from zapbridge.channels.wuzapi.models import (
    SUPPORTED_KINDS,
    AckLevel,
    AdaptedMessage,
    Instance,
    Message,
    MessageKind,
)
from zapbridge.channels.wuzapi.transcode import FfmpegTranscoder
from zapbridge.config import Settings
from zapbridge.db import queries
from zapbridge.db.connection import get_conn
from zapbridge.routes import ws
from zapbridge.tickets.service import (
    ContactService,
    SqliteContactService,
    SqliteTicketService,
    Ticket,
    TicketService,
    format_body,
)

logger = logging.getLogger(__name__)

Notifier = Callable[[str, dict[str, object]], None]

VOICE_NOTE_SUMMARY = "🎤 Audio"


def ticket_summary(message: Message) -> str:
    if message.media_type == MessageKind.VOICE_NOTE:
        return VOICE_NOTE_SUMMARY
    return message.body or message.media_url or ""


def message_payload(message: Message, settings: Settings) -> dict[str, Any]:
    payload = message.to_payload()
    if message.media_url:
        payload["media_public_url"] = storage.public_media_url(message.media_url, settings)
    return payload


def ticket_channel(ticket_id: int) -> str:
    return f"ticket:{ticket_id}"


def quoted_message_id(raw_event: dict[str, Any]) -> str | None:
    """Stanza id a reply points at, from any ``*Message`` node's ``contextInfo``."""
    message = raw_event.get("Message")
    if not isinstance(message, dict):
        return None
    for node in message.values():
        if not isinstance(node, dict):
            continue
        context = node.get("contextInfo")
        if isinstance(context, dict):
            stanza = context.get("stanzaId") or context.get("stanzaID")
            if stanza:
                return str(stanza)
    return None


class InboundIngestionPipeline:
    def __init__(
        self,
        *,
        contacts: ContactService,
        tickets: TicketService,
        materializer: MediaMaterializer,
        settings: Settings,
        notify: Notifier = ws.notify,
    ) -> None:
        self._contacts = contacts
        self._tickets = tickets
        self._materializer = materializer
        self._settings = settings
        self._notify = notify

    @classmethod
    def from_settings(cls, settings: Settings) -> InboundIngestionPipeline:
        materializer = MediaMaterializer(
            storage.ensure_media_root(settings.public_dir),
            FfmpegTranscoder.from_settings(settings),
        )
        return cls(
            contacts=SqliteContactService(),
            tickets=SqliteTicketService(),
            materializer=materializer,
            settings=settings,
        )

    async def ingest(
        self, adapted: AdaptedMessage, instance: Instance, gateway: ProviderGateway
    ) -> Message | None:
        """Persist one adapted message exactly once. Returns None when nothing was stored.

        ``MediaDownloadError`` propagates: the message is dropped and the caller
        decides what to report to the transport.
        """
        if adapted.kind not in SUPPORTED_KINDS:
            logger.info("Dropping unsupported %s message %s", adapted.kind, adapted.id)
            return None

        with get_conn() as conn:
            already_stored = queries.get_message(conn, adapted.id) is not None
        if already_stored:
            logger.info("Message %s already stored; skipping", adapted.id)
            return None

        # our own display name must not overwrite the contact's
        contact = self._contacts.resolve(
            adapted.from_address, None if adapted.from_me else adapted.display_name
        )
        unread = 0 if adapted.from_me else 1
        if (
            unread == 0
            and instance.farewell_message
            and format_body(instance.farewell_message, contact) == adapted.body
        ):
            logger.info("Farewell echo %s leaves ticket untouched", adapted.id)
            return None

        # unread is counted only once the insert below wins
        ticket = self._tickets.find_or_create(contact, instance.id, 0)

        media_url: str | None = None
        file_name: str | None = None
        if adapted.media is not None:
            materialized = await self._materializer.materialize(adapted.media, gateway)
            media_url = materialized.stored_file_name
            file_name = adapted.media.file_name or materialized.stored_file_name

        message = Message(
            id=adapted.id,
            ticket_id=ticket.id,
            contact_id=None if adapted.from_me else contact.id,
            body=adapted.body,
            media_type=adapted.kind.value,
            created_at=adapted.created_at,
            from_me=adapted.from_me,
            read=adapted.from_me,
            ack=AckLevel.PENDING,
            media_url=media_url,
            file_name=file_name,
            quoted_msg_id=quoted_message_id(adapted.raw_event),
        )
        with get_conn() as conn:
            inserted = queries.insert_message_if_absent(conn, message)
        if not inserted:
            logger.info("Message %s stored concurrently; skipping", message.id)
            if media_url:
                self._materializer.discard(media_url)
            return None

        ticket = self._update_summary(ticket, message, unread)
        self._notify(
            ticket.status,
            {"event": "ticket", "action": "update", "ticket": ticket.to_payload()},
        )
        self._notify(
            ticket_channel(ticket.id),
            {
                "event": "appMessage",
                "action": "create",
                "message": message_payload(message, self._settings),
                "ticket": ticket.to_payload(),
            },
        )
        logger.info("Inbound message %s stored on ticket %s", message.id, ticket.id)
        return message

    def _update_summary(self, ticket: Ticket, message: Message, unread: int) -> Ticket:
        try:
            if unread:
                self._tickets.bump_unread(ticket.id, unread)
            self._tickets.update_last_message(ticket.id, ticket_summary(message))
            return self._tickets.get(ticket.id) or ticket
        except sqlite3.Error:
            logger.exception(
                "Ticket %s summary update failed after storing %s", ticket.id, message.id
            )
            return ticket

    def handle_deletion(self, message_id: str) -> Message | None:
        """Soft-delete a stored message. Unknown ids are ignored."""
        with get_conn() as conn:
            changed = queries.mark_message_deleted(conn, message_id)
            message = queries.get_message(conn, message_id)
        if message is None:
            logger.info("Deletion for unknown message %s ignored", message_id)
            return None
        if changed:
            self._notify(
                ticket_channel(message.ticket_id),
                {
                    "event": "appMessage",
                    "action": "update",
                    "message": message_payload(message, self._settings),
                },
            )
        return message

    def handle_receipt(self, receipt: ReadReceipt) -> list[Message]:
        updated: list[Message] = []
        for message_id in receipt.message_ids:
            with get_conn() as conn:
                changed = queries.update_message_ack(
                    conn, message_id, ack=int(receipt.ack), read=receipt.read
                )
                message = queries.get_message(conn, message_id) if changed else None
            if message is None:
                logger.debug("Receipt for %s changed nothing", message_id)
                continue
            updated.append(message)
            self._notify(
                ticket_channel(message.ticket_id),
                {
                    "event": "appMessage",
                    "action": "update",
                    "message": message_payload(message, self._settings),
                },
            )
        return updated
