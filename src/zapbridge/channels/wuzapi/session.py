"""Session control and instance provisioning for Wuzapi instances."""

from __future__ import annotations

import logging
import secrets
from typing import Any
from urllib.parse import urlencode

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from zapbridge.channels.wuzapi import storage
from zapbridge.channels.wuzapi.client import ProviderGateway, SessionStatus, WuzapiAdminClient
from zapbridge.channels.wuzapi.ingest import Notifier
from zapbridge.channels.wuzapi.models import Instance
from zapbridge.channels.wuzapi.router import GatewayFactory, get_gateway_factory
from zapbridge.config import Settings, get_settings
from zapbridge.db import queries
from zapbridge.db.connection import get_conn
from zapbridge.errors import GatewayError, InstanceNotFoundError
from zapbridge.ids import new_id
from zapbridge.routes import ws

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/whatsapp", tags=["api-whatsapp"])

INSTANCE_CHANNEL = "whatsapp"


def webhook_url_for(instance_id: str, settings: Settings) -> str:
    """Callback URL registered with the provider; carries the shared secret if one is set."""
    url = f"{storage.backend_base_url(settings)}/webhooks/wuzapi/{instance_id}"
    secret = settings.wuzapi_webhook_secret.strip()
    return f"{url}?{urlencode({'secret': secret})}" if secret else url


def instance_payload(instance: Instance) -> dict[str, object]:
    return {
        "id": instance.id,
        "name": instance.name,
        "status": instance.status,
        "qrcode": instance.qrcode,
        "farewell_message": instance.farewell_message,
    }


class SessionService:
    """Drives one instance's provider session and mirrors its state into the row."""

    def __init__(
        self, instance: Instance, gateway: ProviderGateway, *, notify: Notifier = ws.notify
    ) -> None:
        self._instance = instance
        self._gateway = gateway
        self._notify = notify

    async def connect(self) -> Instance:
        await self._gateway.connect()
        qrcode = await self._gateway.qrcode()
        session = await self._gateway.status()
        if session.instance_status == "CONNECTED":
            return self._store(session.instance_status, "")
        return self._store("qrcode", qrcode or session.qrcode)

    async def refresh_status(self) -> Instance:
        session = await self._gateway.status()
        return self._store(session.instance_status, self._qrcode_for(session))

    async def qrcode(self) -> str:
        return await self._gateway.qrcode()

    async def disconnect(self) -> Instance:
        await self._gateway.disconnect()
        return await self.refresh_status()

    def _qrcode_for(self, session: SessionStatus) -> str:
        if session.instance_status != "qrcode":
            return ""
        # the status endpoint omits the code between scans
        return session.qrcode or self._instance.qrcode

    def _store(self, status: str, qrcode: str) -> Instance:
        with get_conn() as conn:
            changed = queries.update_instance_session(
                conn, self._instance.id, status=status, qrcode=qrcode
            )
            instance = queries.get_instance(conn, self._instance.id)
        if instance is None:
            raise InstanceNotFoundError(self._instance.id)
        if changed:
            logger.info("Instance %s session is now %s", instance.id, status)
            self._notify(
                INSTANCE_CHANNEL,
                {"event": "whatsapp", "action": "update", "whatsapp": instance_payload(instance)},
            )
        self._instance = instance
        return instance


async def provision_instance(
    admin: WuzapiAdminClient,
    settings: Settings,
    *,
    name: str,
    gateway_url: str,
    farewell_message: str = "",
) -> Instance:
    """Create the provider-side user first, then the local row pointing at it."""
    instance_id = new_id("wa")
    token = secrets.token_hex(16)
    provider_user_id = await admin.create_instance(
        name, token, webhook_url_for(instance_id, settings)
    )
    with get_conn() as conn:
        queries.insert_instance(
            conn,
            instance_id=instance_id,
            name=name,
            gateway_url=gateway_url,
            token=token,
            farewell_message=farewell_message,
            provider_user_id=provider_user_id,
        )
        instance = queries.get_instance(conn, instance_id)
    if instance is None:
        raise InstanceNotFoundError(instance_id)
    return instance


async def remove_instance(admin: WuzapiAdminClient, instance: Instance) -> None:
    if instance.provider_user_id:
        await admin.delete_instance(instance.provider_user_id)
    with get_conn() as conn:
        queries.delete_instance(conn, instance.id)


def get_admin_client() -> WuzapiAdminClient:
    settings = get_settings()
    return WuzapiAdminClient(
        settings.wuzapi_admin_url,
        settings.wuzapi_admin_token,
        timeout_seconds=settings.gateway_timeout_seconds,
    )


def _load_instance(instance_id: str) -> Instance | None:
    with get_conn() as conn:
        return queries.get_instance(conn, instance_id)


def _not_found() -> JSONResponse:
    return JSONResponse(status_code=404, content={"ok": False, "error": "instance_not_found"})


def _gateway_failed(exc: GatewayError) -> JSONResponse:
    logger.warning("Wuzapi gateway call failed: %s", exc)
    return JSONResponse(status_code=502, content={"ok": False, "error": "gateway_unavailable"})


class CreateInstanceBody(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    gateway_url: str = Field(min_length=1, max_length=500)
    farewell_message: str = Field(default="", max_length=4000)


@router.get("")
def list_whatsapp_instances() -> dict[str, object]:
    with get_conn() as conn:
        instances = queries.list_instances(conn)
    return {"items": [instance_payload(item) for item in instances]}


@router.post("")
async def create_whatsapp_instance(
    body: CreateInstanceBody,
    admin: WuzapiAdminClient = Depends(get_admin_client),  # noqa: B008
) -> JSONResponse:
    try:
        instance = await provision_instance(
            admin,
            get_settings(),
            name=body.name,
            gateway_url=body.gateway_url,
            farewell_message=body.farewell_message,
        )
    except GatewayError as exc:
        return _gateway_failed(exc)
    return JSONResponse(
        status_code=201, content={"ok": True, "whatsapp": instance_payload(instance)}
    )


@router.delete("/{instance_id}")
async def delete_whatsapp_instance(
    instance_id: str,
    admin: WuzapiAdminClient = Depends(get_admin_client),  # noqa: B008
) -> JSONResponse:
    instance = _load_instance(instance_id)
    if instance is None:
        return _not_found()
    try:
        await remove_instance(admin, instance)
    except GatewayError as exc:
        return _gateway_failed(exc)
    return JSONResponse(status_code=200, content={"ok": True})


async def _run_session_action(
    instance_id: str, gateway_factory: GatewayFactory, action: str
) -> JSONResponse:
    instance = _load_instance(instance_id)
    if instance is None:
        return _not_found()
    if not instance.configured:
        return JSONResponse(
            status_code=409, content={"ok": False, "error": "instance_not_configured"}
        )
    service = SessionService(instance, gateway_factory(instance))
    payload: dict[str, Any]
    try:
        if action == "connect":
            payload = instance_payload(await service.connect())
        elif action == "disconnect":
            payload = instance_payload(await service.disconnect())
        elif action == "qr":
            payload = {"id": instance.id, "qrcode": await service.qrcode()}
        else:
            payload = instance_payload(await service.refresh_status())
    except GatewayError as exc:
        return _gateway_failed(exc)
    return JSONResponse(status_code=200, content={"ok": True, "whatsapp": payload})


@router.post("/{instance_id}/session/connect")
async def connect_session(
    instance_id: str,
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),  # noqa: B008
) -> JSONResponse:
    return await _run_session_action(instance_id, gateway_factory, "connect")


@router.get("/{instance_id}/session/status")
async def session_status(
    instance_id: str,
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),  # noqa: B008
) -> JSONResponse:
    return await _run_session_action(instance_id, gateway_factory, "status")


@router.get("/{instance_id}/session/qr")
async def session_qrcode(
    instance_id: str,
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),  # noqa: B008
) -> JSONResponse:
    return await _run_session_action(instance_id, gateway_factory, "qr")


@router.post("/{instance_id}/session/disconnect")
async def disconnect_session(
    instance_id: str,
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),  # noqa: B008
) -> JSONResponse:
    return await _run_session_action(instance_id, gateway_factory, "disconnect")
