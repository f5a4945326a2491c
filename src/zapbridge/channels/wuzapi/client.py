"""Wuzapi HTTP gateway client.

One ``WuzapiClient`` per instance: the gateway is addressed by its base URL
and authenticated by the instance token header. Failures raise; nothing
here retries.
"""

from __future__ import annotations

import base64
import binascii
import logging
import random
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from zapbridge.channels.wuzapi.models import (
    Instance,
    MessageKind,
    RemoteMediaReference,
    SendResult,
)
from zapbridge.config import Settings
from zapbridge.errors import GatewayDispatchError, GatewayError, MediaDownloadError

logger = logging.getLogger(__name__)

SUBSCRIBED_EVENTS = ["Message", "ReadReceipt"]
VOICE_NOTE_MIME = "audio/ogg; codecs=opus"
WAVEFORM_POINTS = 32
WAVEFORM_CEILING = 25

# outbound encode side of the kind union: endpoint + payload key
_MEDIA_ENDPOINTS: dict[MessageKind, tuple[str, str]] = {
    MessageKind.IMAGE: ("/chat/send/image", "Image"),
    MessageKind.STICKER: ("/chat/send/image", "Image"),
    MessageKind.VIDEO: ("/chat/send/video", "Video"),
    MessageKind.AUDIO: ("/chat/send/audio", "Audio"),
    MessageKind.VOICE_NOTE: ("/chat/send/audio", "Audio"),
    MessageKind.DOCUMENT: ("/chat/send/document", "Document"),
}


@dataclass(frozen=True, slots=True)
class SessionStatus:
    connected: bool
    logged_in: bool
    qrcode: str = ""
    jid: str = ""

    @property
    def instance_status(self) -> str:
        if self.connected and self.logged_in:
            return "CONNECTED"
        if self.connected:
            return "qrcode"
        return "DISCONNECTED"


class ProviderGateway(Protocol):
    async def send_text(
        self, phone: str, body: str, *, message_id: str | None = None
    ) -> SendResult: ...

    async def send_media(
        self,
        phone: str,
        media_url: str,
        *,
        kind: MessageKind,
        caption: str = "",
        file_name: str | None = None,
        message_id: str | None = None,
    ) -> SendResult: ...

    async def send_voice_note(
        self,
        phone: str,
        audio: bytes,
        *,
        mime_type: str = VOICE_NOTE_MIME,
        duration_seconds: int = 0,
        message_id: str | None = None,
    ) -> SendResult: ...

    async def download_remote_video(self, reference: RemoteMediaReference) -> bytes: ...

    async def connect(self) -> dict[str, Any]: ...

    async def disconnect(self) -> dict[str, Any]: ...

    async def qrcode(self) -> str: ...

    async def status(self) -> SessionStatus: ...


def voice_note_waveform() -> list[int]:
    return [random.randrange(WAVEFORM_CEILING) for _ in range(WAVEFORM_POINTS)]


def decode_data_url(value: str) -> bytes:
    """Bytes of a ``data:<mime>;base64,<payload>`` string or a bare base64 string."""
    payload = value.split(",", 1)[1] if value.startswith("data:") and "," in value else value
    return base64.b64decode(payload, validate=False)


class WuzapiClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout_seconds: int = 20,
        download_timeout_seconds: int = 60,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token.strip()
        self._timeout = timeout_seconds
        self._download_timeout = download_timeout_seconds
        self._transport = transport

    @classmethod
    def for_instance(
        cls,
        instance: Instance,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> WuzapiClient:
        return cls(
            instance.gateway_url,
            instance.token,
            timeout_seconds=settings.gateway_timeout_seconds,
            download_timeout_seconds=settings.gateway_download_timeout_seconds,
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        return {
            "token": self._token,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        timeout: int | None = None,
    ) -> tuple[int, dict[str, Any]]:
        url = f"{self._base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=timeout or self._timeout, transport=self._transport
            ) as client:
                response = await client.request(method, url, json=payload, headers=self._headers())
        except httpx.HTTPError as exc:
            raise GatewayError(f"wuzapi {path} unreachable: {exc}", retryable=True) from exc
        return response.status_code, self._safe_json(response)

    async def _send(self, path: str, payload: dict[str, Any]) -> SendResult:
        try:
            status_code, body = await self._request("POST", path, payload=payload)
        except GatewayError as exc:
            raise GatewayDispatchError(str(exc), retryable=exc.retryable) from exc
        if status_code >= 400 or not body.get("success"):
            raise GatewayDispatchError(f"wuzapi {path} rejected send (status={status_code})")
        data = body.get("data")
        provider_id = ""
        if isinstance(data, dict):
            provider_id = str(data.get("Id") or data.get("id") or "")
        result = SendResult(success=True, provider_message_id=provider_id or payload.get("Id", ""))
        logger.info("Wuzapi %s accepted message %s", path, result.provider_message_id)
        return result

    async def send_text(
        self, phone: str, body: str, *, message_id: str | None = None
    ) -> SendResult:
        payload: dict[str, Any] = {"Phone": phone, "Body": body}
        if message_id:
            payload["Id"] = message_id
        return await self._send("/chat/send/text", payload)

    async def send_media(
        self,
        phone: str,
        media_url: str,
        *,
        kind: MessageKind,
        caption: str = "",
        file_name: str | None = None,
        message_id: str | None = None,
    ) -> SendResult:
        route = _MEDIA_ENDPOINTS.get(kind)
        if route is None:
            raise GatewayDispatchError(f"wuzapi cannot send media of kind {kind}")
        path, media_key = route
        payload: dict[str, Any] = {"Phone": phone, media_key: media_url}
        if kind is MessageKind.DOCUMENT:
            payload["FileName"] = file_name or "document"
        else:
            payload["Caption"] = caption
        if message_id:
            payload["Id"] = message_id
        return await self._send(path, payload)

    async def send_voice_note(
        self,
        phone: str,
        audio: bytes,
        *,
        mime_type: str = VOICE_NOTE_MIME,
        duration_seconds: int = 0,
        message_id: str | None = None,
    ) -> SendResult:
        encoded = base64.b64encode(audio).decode("ascii")
        payload: dict[str, Any] = {
            "Phone": phone,
            "Audio": f"data:audio/ogg;base64,{encoded}",
            "PTT": True,
            "MimeType": mime_type,
            "Seconds": duration_seconds,
            "Waveform": voice_note_waveform(),
        }
        if message_id:
            payload["Id"] = message_id
        return await self._send("/chat/send/audio", payload)

    async def download_remote_video(self, reference: RemoteMediaReference) -> bytes:
        payload = {
            "Url": reference.url,
            "DirectPath": reference.direct_path,
            "MediaKey": reference.media_key,
            "Mimetype": reference.mime_type,
            "FileEncSHA256": reference.file_enc_sha256,
            "FileSHA256": reference.file_sha256,
            "FileLength": reference.file_length,
        }
        try:
            status_code, body = await self._request(
                "POST", "/chat/downloadvideo", payload=payload, timeout=self._download_timeout
            )
        except GatewayError as exc:
            raise MediaDownloadError("media_download_failed") from exc
        if status_code >= 400:
            raise MediaDownloadError("media_download_failed")
        data = body.get("data")
        wrapped = data.get("Data") if isinstance(data, dict) else body.get("Data")
        if not isinstance(wrapped, str) or not wrapped:
            raise MediaDownloadError("media_download_empty")
        try:
            return decode_data_url(wrapped)
        except (binascii.Error, ValueError) as exc:
            raise MediaDownloadError("media_download_undecodable") from exc

    async def connect(self) -> dict[str, Any]:
        status_code, body = await self._request(
            "POST",
            "/session/connect",
            payload={"Subscribe": SUBSCRIBED_EVENTS, "Immediate": False},
        )
        # already-connected sessions answer with an error body; callers continue to QR/status
        if status_code >= 500:
            raise GatewayError(f"wuzapi connect failed (status={status_code})")
        return body

    async def disconnect(self) -> dict[str, Any]:
        status_code, body = await self._request("POST", "/session/disconnect")
        if status_code >= 500:
            raise GatewayError(f"wuzapi disconnect failed (status={status_code})")
        return body

    async def qrcode(self) -> str:
        status_code, body = await self._request("GET", "/session/qr")
        if status_code >= 400:
            return ""
        data = body.get("data")
        return str(data.get("QRCode") or "") if isinstance(data, dict) else ""

    async def status(self) -> SessionStatus:
        status_code, body = await self._request("GET", "/session/status")
        if status_code >= 400:
            raise GatewayError(f"wuzapi status failed (status={status_code})")
        data = body.get("data")
        if not isinstance(data, dict):
            data = {}
        return SessionStatus(
            connected=bool(data.get("connected") or data.get("Connected")),
            logged_in=bool(data.get("loggedIn") or data.get("LoggedIn")),
            qrcode=str(data.get("qrcode") or ""),
            jid=str(data.get("jid") or ""),
        )

    @staticmethod
    def _safe_json(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}


class WuzapiAdminClient:
    """Provisioning side of the gateway, authenticated with the admin token."""

    def __init__(
        self,
        admin_url: str,
        admin_token: str,
        *,
        timeout_seconds: int = 20,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = admin_url.rstrip("/")
        self._admin_token = admin_token.strip()
        self._timeout = timeout_seconds
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self._base_url and self._admin_token)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": self._admin_token, "Content-Type": "application/json"}

    async def _request(
        self, method: str, path: str, payload: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        if not self.enabled:
            raise GatewayError("wuzapi admin API is not configured")
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.request(
                    method, f"{self._base_url}{path}", json=payload, headers=self._headers()
                )
        except httpx.HTTPError as exc:
            raise GatewayError(f"wuzapi admin {path} unreachable: {exc}", retryable=True) from exc
        body = WuzapiClient._safe_json(response)
        if response.status_code >= 400 or body.get("success") is False:
            raise GatewayError(f"wuzapi admin {path} failed (status={response.status_code})")
        return body

    async def create_instance(self, name: str, token: str, webhook_url: str) -> str:
        """Create a gateway user; returns the provider-side user id."""
        body = await self._request(
            "POST",
            "/admin/users",
            {"name": name, "token": token, "webhook": webhook_url, "events": SUBSCRIBED_EVENTS},
        )
        data = body.get("data")
        user_id = ""
        if isinstance(data, dict):
            user_id = str(data.get("id") or data.get("Id") or "")
        logger.info("Wuzapi instance provisioned: %s (%s)", name, user_id or "no id")
        return user_id

    async def delete_instance(self, user_id: str) -> None:
        await self._request("DELETE", f"/admin/users/{user_id}")
        logger.info("Wuzapi instance removed: %s", user_id)
