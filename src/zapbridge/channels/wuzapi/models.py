"""Canonical message model shared by the inbound and outbound paths."""

from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import IntEnum, StrEnum
from pathlib import Path
from typing import Any

from zapbridge.errors import MediaDownloadError


class MessageKind(StrEnum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    VOICE_NOTE = "voice-note"
    DOCUMENT = "document"
    CONTACT_CARD = "contact-card"
    STICKER = "sticker"
    LOCATION = "location"
    UNKNOWN = "unknown"


MEDIA_KINDS: frozenset[MessageKind] = frozenset(
    {
        MessageKind.IMAGE,
        MessageKind.VIDEO,
        MessageKind.AUDIO,
        MessageKind.VOICE_NOTE,
        MessageKind.DOCUMENT,
        MessageKind.STICKER,
    }
)

SUPPORTED_KINDS: frozenset[MessageKind] = frozenset(MessageKind) - {MessageKind.UNKNOWN}


class AckLevel(IntEnum):
    ERROR = -1
    PENDING = 0
    SERVER = 1
    DEVICE = 2
    READ = 3
    PLAYED = 4


@dataclass(frozen=True, slots=True)
class InlineMedia:
    encoded_data: str
    file_name: str
    mime_type: str


@dataclass(frozen=True, slots=True)
class RemoteMediaReference:
    """Encrypted CDN pointer; the provider's decode endpoint turns it into bytes."""

    url: str
    direct_path: str = ""
    media_key: str = ""
    mime_type: str = ""
    file_enc_sha256: str = ""
    file_sha256: str = ""
    file_length: int = 0


@dataclass(frozen=True, slots=True)
class MediaDescriptor:
    kind: MessageKind
    inline: InlineMedia | None = None
    remote: RemoteMediaReference | None = None
    file_name: str = ""

    def validate(self) -> None:
        """Exactly one of inline payload or remote reference for media kinds."""
        if self.kind not in MEDIA_KINDS:
            return
        if (self.inline is None) == (self.remote is None):
            raise MediaDownloadError("media_descriptor_invalid")


@dataclass(frozen=True, slots=True)
class AdaptedMessage:
    """One provider message event, normalized. Never stored."""

    id: str
    from_me: bool
    from_address: str
    body: str
    kind: MessageKind
    timestamp: int
    display_name: str | None = None
    media: MediaDescriptor | None = None
    raw_event: dict[str, Any] = field(default_factory=dict)

    @property
    def created_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp / 1000, tz=UTC)


@dataclass(slots=True)
class Message:
    id: str
    ticket_id: int
    contact_id: int | None
    body: str
    media_type: str
    created_at: datetime
    from_me: bool = False
    read: bool = False
    ack: int = AckLevel.PENDING
    is_deleted: bool = False
    media_url: str | None = None
    file_name: str | None = None
    quoted_msg_id: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Message:
        return cls(
            id=str(row["id"]),
            ticket_id=int(row["ticket_id"]),
            contact_id=int(row["contact_id"]) if row["contact_id"] is not None else None,
            body=str(row["body"]),
            media_type=str(row["media_type"]),
            created_at=datetime.fromisoformat(str(row["created_at"])),
            from_me=bool(row["from_me"]),
            read=bool(row["read"]),
            ack=int(row["ack"]),
            is_deleted=bool(row["is_deleted"]),
            media_url=row["media_url"],
            file_name=row["file_name"],
            quoted_msg_id=row["quoted_msg_id"],
        )

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        return payload


@dataclass(frozen=True, slots=True)
class Instance:
    """A configured provider connection, addressed by its gateway URL + token."""

    id: str
    name: str
    gateway_url: str
    token: str
    farewell_message: str = ""
    status: str = "DISCONNECTED"
    qrcode: str = ""
    provider_user_id: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.gateway_url.strip() and self.token.strip())

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Instance:
        return cls(
            id=str(row["id"]),
            name=str(row["name"]),
            gateway_url=str(row["gateway_url"]),
            token=str(row["token"]),
            farewell_message=str(row["farewell_message"]),
            status=str(row["status"]),
            qrcode=str(row["qrcode"]),
            provider_user_id=str(row["provider_user_id"]),
        )


@dataclass(frozen=True, slots=True)
class SendResult:
    success: bool
    provider_message_id: str


@dataclass(frozen=True, slots=True)
class TextContent:
    body: str
    quoted_msg_id: str | None = None


@dataclass(frozen=True, slots=True)
class FileUpload:
    """A file received by the application; ``path`` is a temporary upload location."""

    path: Path
    file_name: str
    mime_type: str
    caption: str = ""


@dataclass(frozen=True, slots=True)
class RemoteMediaContent:
    url: str
    kind: MessageKind
    caption: str = ""
    file_name: str | None = None


OutboundContent = TextContent | FileUpload | RemoteMediaContent
