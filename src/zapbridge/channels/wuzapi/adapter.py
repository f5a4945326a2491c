"""Wuzapi webhook adapter: raw provider events to canonical messages."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from zapbridge.channels.wuzapi import identity
from zapbridge.channels.wuzapi.models import (
    MEDIA_KINDS,
    AckLevel,
    AdaptedMessage,
    InlineMedia,
    MediaDescriptor,
    MessageKind,
    RemoteMediaReference,
)

logger = logging.getLogger(__name__)

MESSAGE_EVENT = "Message"
READ_RECEIPT_EVENT = "ReadReceipt"

# protocolMessage.type value the provider uses for "delete for everyone"
REVOKE_PROTOCOL_TYPES = {0, "0", "REVOKE"}

_MEDIA_TYPE_KINDS: dict[str, MessageKind] = {
    "image": MessageKind.IMAGE,
    "video": MessageKind.VIDEO,
    "audio": MessageKind.AUDIO,
    "ptt": MessageKind.VOICE_NOTE,
    "document": MessageKind.DOCUMENT,
    "sticker": MessageKind.STICKER,
    "vcard": MessageKind.CONTACT_CARD,
    "contact_array": MessageKind.CONTACT_CARD,
    "location": MessageKind.LOCATION,
    "livelocation": MessageKind.LOCATION,
}

_RECEIPT_ACKS: dict[str, AckLevel] = {
    "delivered": AckLevel.DEVICE,
    "read": AckLevel.READ,
    "played": AckLevel.PLAYED,
}

_FRACTION = re.compile(r"(\.\d{6})\d+")


def decode_kind(declared_type: str, media_type: str = "") -> MessageKind:
    """Map the provider's declared ``Info.Type``/``Info.MediaType`` pair to a kind."""
    declared = declared_type.strip().lower()
    if declared in {"text", "chat"}:
        return MessageKind.TEXT
    if declared == "media":
        return _MEDIA_TYPE_KINDS.get(media_type.strip().lower(), MessageKind.UNKNOWN)
    return _MEDIA_TYPE_KINDS.get(declared, MessageKind.UNKNOWN)


def parse_timestamp(value: object) -> int | None:
    """Provider timestamp (RFC 3339 or epoch seconds/ms) to epoch milliseconds."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        number = float(value)
        return int(number if number > 10**11 else number * 1000)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.isdigit():
        return parse_timestamp(int(text))
    # Go emits nanosecond fractions; fromisoformat stops at microseconds
    text = _FRACTION.sub(r"\1", text)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return int(parsed.timestamp() * 1000)


def _node(container: dict[str, Any], key: str) -> dict[str, Any]:
    value = container.get(key)
    return value if isinstance(value, dict) else {}


def _text_body(message: dict[str, Any]) -> str:
    if message.get("conversation"):
        return str(message["conversation"])
    return str(_node(message, "extendedTextMessage").get("text") or "")


def _caption(node_name: str) -> Callable[[dict[str, Any]], str]:
    def extract(message: dict[str, Any]) -> str:
        return str(_node(message, node_name).get("caption") or "")

    return extract


def _contact_card(message: dict[str, Any]) -> str:
    return str(_node(message, "contactMessage").get("vcard") or "")


def _location(message: dict[str, Any]) -> str:
    node = _node(message, "locationMessage") or _node(message, "liveLocationMessage")
    lat = node.get("degreesLatitude")
    lng = node.get("degreesLongitude")
    if lat is None or lng is None:
        return ""
    return f"{lat},{lng}"


_BODY_RULES: dict[MessageKind, Callable[[dict[str, Any]], str]] = {
    MessageKind.TEXT: _text_body,
    MessageKind.IMAGE: _caption("imageMessage"),
    MessageKind.VIDEO: _caption("videoMessage"),
    MessageKind.DOCUMENT: _caption("documentMessage"),
    MessageKind.CONTACT_CARD: _contact_card,
    MessageKind.LOCATION: _location,
}


class WuzapiMessageAdapter:
    """Turns one webhook body into an ``AdaptedMessage`` or ``None``.

    ``None`` covers every payload the pipeline must skip: other event
    kinds, missing identity/timestamp fields, broadcast sources, media
    kinds without a usable payload and anything structurally broken. It is
    logged here and never raised, so the webhook can still acknowledge.
    """

    def adapt(self, payload: dict[str, Any]) -> AdaptedMessage | None:
        try:
            return self._adapt(payload)
        except (AttributeError, KeyError, TypeError, ValueError):
            logger.exception("Error adapting wuzapi message payload")
            return None

    def _adapt(self, payload: dict[str, Any]) -> AdaptedMessage | None:
        if not isinstance(payload, dict):
            logger.warning("Wuzapi webhook body is not an object; skipping")
            return None
        event = payload.get("event")
        if payload.get("type") != MESSAGE_EVENT or not isinstance(event, dict):
            logger.warning(
                "Wuzapi webhook is not a message event: type=%s", payload.get("type")
            )
            return None

        info = _node(event, "Info")
        message = _node(event, "Message")
        msg_id = str(info.get("ID") or "")
        timestamp = parse_timestamp(info.get("Timestamp"))
        if not info or not message or not msg_id or timestamp is None:
            logger.warning("Wuzapi message event is missing Info/Message/ID/Timestamp; skipping")
            return None

        chat = info.get("Chat")
        if not isinstance(chat, str):
            logger.warning("Wuzapi message %s has a non-string Chat; skipping", msg_id)
            return None
        from_address = identity.normalize(chat, str(info.get("SenderAlt") or ""))
        if from_address is None:
            logger.info("Ignoring status/broadcast message %s", msg_id)
            return None

        kind = decode_kind(str(info.get("Type") or "chat"), str(info.get("MediaType") or ""))
        rule = _BODY_RULES.get(kind)
        body = rule(message) if rule is not None else ""

        media: MediaDescriptor | None = None
        if kind in MEDIA_KINDS:
            media = self._media_descriptor(kind, payload, message)
            if media is None:
                logger.warning(
                    "Wuzapi %s message %s carries no media payload; skipping", kind, msg_id
                )
                return None

        adapted = AdaptedMessage(
            id=msg_id,
            from_me=bool(info.get("IsFromMe") or False),
            from_address=from_address,
            body=body,
            kind=kind,
            timestamp=timestamp,
            display_name=str(info.get("PushName") or "") or None,
            media=media,
            raw_event=event,
        )
        logger.info("Wuzapi message adapted: %s (%s)", adapted.id, adapted.kind)
        return adapted

    @staticmethod
    def _media_descriptor(
        kind: MessageKind, payload: dict[str, Any], message: dict[str, Any]
    ) -> MediaDescriptor | None:
        file_name = str(payload.get("fileName") or "")

        video = _node(message, "videoMessage")
        if kind is MessageKind.VIDEO and video.get("URL"):
            reference = RemoteMediaReference(
                url=str(video["URL"]),
                direct_path=str(video.get("directPath") or ""),
                media_key=str(video.get("mediaKey") or ""),
                mime_type=str(video.get("mimetype") or "video/mp4"),
                file_enc_sha256=str(video.get("fileEncSHA256") or ""),
                file_sha256=str(video.get("fileSHA256") or ""),
                file_length=int(video.get("fileLength") or 0),
            )
            return MediaDescriptor(kind=kind, remote=reference, file_name=file_name)

        encoded = payload.get("base64")
        mime_type = str(payload.get("mimeType") or "")
        if not encoded or not file_name or not mime_type:
            return None
        # audio messages carry the codec detail (e.g. "audio/ogg; codecs=opus") themselves
        audio_mime = _node(message, "audioMessage").get("mimetype")
        if audio_mime:
            mime_type = str(audio_mime)
        inline = InlineMedia(encoded_data=str(encoded), file_name=file_name, mime_type=mime_type)
        return MediaDescriptor(kind=kind, inline=inline, file_name=file_name)


@dataclass(frozen=True, slots=True)
class ReadReceipt:
    message_ids: tuple[str, ...]
    ack: AckLevel
    read: bool


def parse_read_receipt(payload: dict[str, Any]) -> ReadReceipt | None:
    event = payload.get("event")
    if not isinstance(event, dict):
        return None
    raw_ids = event.get("MessageIDs")
    if not isinstance(raw_ids, list):
        return None
    message_ids = tuple(str(item) for item in raw_ids if isinstance(item, str) and item)
    state = str(payload.get("state") or event.get("Type") or "delivered").strip().lower()
    ack = _RECEIPT_ACKS.get(state)
    if not message_ids or ack is None:
        return None
    return ReadReceipt(message_ids=message_ids, ack=ack, read=ack >= AckLevel.READ)


def revoked_message_id(payload: dict[str, Any]) -> str | None:
    """Id of the message a "delete for everyone" event refers to, if it is one."""
    event = payload.get("event")
    if not isinstance(event, dict):
        return None
    protocol = _node(_node(event, "Message"), "protocolMessage")
    if not protocol or protocol.get("type") not in REVOKE_PROTOCOL_TYPES:
        return None
    key = _node(protocol, "key")
    target = key.get("ID") or key.get("id") or _node(event, "Info").get("ID")
    return str(target) if target else None
