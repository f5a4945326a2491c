"""Wuzapi webhook routes."""

from __future__ import annotations

import hmac
import json
import logging
import sqlite3
from collections.abc import Callable
from typing import Any

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse

from zapbridge.channels.wuzapi.adapter import (
    MESSAGE_EVENT,
    READ_RECEIPT_EVENT,
    WuzapiMessageAdapter,
    parse_read_receipt,
    revoked_message_id,
)
from zapbridge.channels.wuzapi.client import ProviderGateway, WuzapiClient
from zapbridge.channels.wuzapi.ingest import InboundIngestionPipeline
from zapbridge.channels.wuzapi.models import Instance
from zapbridge.config import get_settings
from zapbridge.db import queries
from zapbridge.db.connection import get_conn
from zapbridge.errors import GatewayError, MediaDownloadError
from zapbridge.logging import bound_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/wuzapi", tags=["wuzapi"])

GatewayFactory = Callable[[Instance], ProviderGateway]

_adapter = WuzapiMessageAdapter()


def get_gateway_factory() -> GatewayFactory:
    settings = get_settings()
    return lambda instance: WuzapiClient.for_instance(instance, settings)


def get_ingestion_pipeline() -> InboundIngestionPipeline:
    return InboundIngestionPipeline.from_settings(get_settings())


async def handle_webhook_event(
    payload: dict[str, Any],
    instance: Instance,
    *,
    pipeline: InboundIngestionPipeline,
    gateway: ProviderGateway,
) -> dict[str, object]:
    """Route one webhook body by event kind. Returns the response body.

    Only infrastructure failures raise; everything the provider could resend
    forever (unknown kinds, malformed events, unavailable media) is answered.
    """
    event_type = payload.get("type")

    if event_type == READ_RECEIPT_EVENT:
        receipt = parse_read_receipt(payload)
        if receipt is None:
            logger.info("Read receipt without usable ids/state ignored")
            return {"accepted": True, "ignored": True}
        updated = pipeline.handle_receipt(receipt)
        return {"accepted": True, "updated": len(updated)}

    if event_type != MESSAGE_EVENT:
        logger.debug("Wuzapi event %s ignored", event_type)
        return {"accepted": True, "ignored": True}

    revoked = revoked_message_id(payload)
    if revoked is not None:
        deleted = pipeline.handle_deletion(revoked)
        return {"accepted": True, "deleted": deleted is not None}

    adapted = _adapter.adapt(payload)
    if adapted is None:
        return {"accepted": True, "ignored": True}

    with bound_context(message_id=adapted.id):
        try:
            message = await pipeline.ingest(adapted, instance, gateway)
        except MediaDownloadError as exc:
            logger.warning("Dropping message %s: media unavailable (%s)", adapted.id, exc.reason)
            return {"accepted": True, "dropped": True, "reason": exc.reason}
    return {"accepted": True, "stored": message is not None}


def _secret_matches(required: str, provided: str) -> bool:
    if not required:
        return True
    return bool(provided) and hmac.compare_digest(provided, required)


@router.post("/{instance_id}")
async def inbound(
    instance_id: str,
    request: Request,
    x_webhook_secret: str | None = Header(default=None),
    pipeline: InboundIngestionPipeline = Depends(get_ingestion_pipeline),  # noqa: B008
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),  # noqa: B008
) -> JSONResponse:
    settings = get_settings()
    provided = str(x_webhook_secret or request.query_params.get("secret") or "").strip()
    if not _secret_matches(settings.wuzapi_webhook_secret.strip(), provided):
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"accepted": False, "error": "invalid_webhook_secret"},
        )

    with get_conn() as conn:
        instance = queries.get_instance(conn, instance_id)
    if instance is None:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"accepted": False, "error": "instance_not_found"},
        )

    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Wuzapi webhook for %s is not JSON; ignoring", instance_id)
        return JSONResponse(status_code=200, content={"accepted": True, "ignored": True})
    if not isinstance(payload, dict):
        return JSONResponse(status_code=200, content={"accepted": True, "ignored": True})

    with bound_context(instance_id=instance_id, event_type=str(payload.get("type") or "")):
        try:
            result = await handle_webhook_event(
                payload, instance, pipeline=pipeline, gateway=gateway_factory(instance)
            )
        except (sqlite3.Error, GatewayError):
            logger.exception("Wuzapi webhook for %s failed", instance_id)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"accepted": False, "error": "webhook_processing_failed"},
            )
    return JSONResponse(status_code=200, content=result)
