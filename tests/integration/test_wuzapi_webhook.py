import sqlite3

import pytest
from fastapi.testclient import TestClient

from zapbridge.channels.wuzapi import router as wuzapi_router
from zapbridge.channels.wuzapi.ingest import InboundIngestionPipeline
from zapbridge.channels.wuzapi.media import MediaMaterializer
from zapbridge.channels.wuzapi.models import RemoteMediaReference
from zapbridge.channels.wuzapi.transcode import FfmpegTranscoder
from zapbridge.config import get_settings
from zapbridge.db import queries
from zapbridge.db.connection import get_conn
from zapbridge.errors import MediaDownloadError
from zapbridge.main import app
from zapbridge.tickets.service import SqliteContactService, SqliteTicketService

PAYLOAD = {
    "type": "Message",
    "event": {
        "Info": {
            "ID": "ABC123",
            "Chat": "5511999@s.whatsapp.net",
            "Type": "text",
            "Timestamp": "2024-01-01T00:00:00Z",
        },
        "Message": {"conversation": "hello"},
    },
}


class NoDownloadGateway:
    async def download_remote_video(self, reference: RemoteMediaReference) -> bytes:
        raise MediaDownloadError("media_download_failed")


@pytest.fixture
def client(media_root, notifications):
    def pipeline() -> InboundIngestionPipeline:
        return InboundIngestionPipeline(
            contacts=SqliteContactService(),
            tickets=SqliteTicketService(),
            materializer=MediaMaterializer(media_root, FfmpegTranscoder()),
            settings=get_settings(),
            notify=notifications,
        )

    app.dependency_overrides[wuzapi_router.get_ingestion_pipeline] = pipeline
    app.dependency_overrides[wuzapi_router.get_gateway_factory] = lambda: (
        lambda instance: NoDownloadGateway()
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_inbound_message_is_stored(client, instance, count_messages) -> None:
    response = client.post(f"/webhooks/wuzapi/{instance.id}", json=PAYLOAD)

    assert response.status_code == 200
    assert response.json() == {"accepted": True, "stored": True}
    assert count_messages("ABC123") == 1


def test_redelivery_is_acknowledged_without_duplicate(client, instance, count_messages) -> None:
    client.post(f"/webhooks/wuzapi/{instance.id}", json=PAYLOAD)
    response = client.post(f"/webhooks/wuzapi/{instance.id}", json=PAYLOAD)

    assert response.status_code == 200
    assert response.json() == {"accepted": True, "stored": False}
    assert count_messages() == 1


def test_unknown_instance_is_404(client) -> None:
    response = client.post("/webhooks/wuzapi/wa_missing", json=PAYLOAD)
    assert response.status_code == 404
    assert response.json()["error"] == "instance_not_found"


def test_webhook_secret_is_enforced(client, instance, monkeypatch) -> None:
    monkeypatch.setenv("WUZAPI_WEBHOOK_SECRET", "shh")
    get_settings.cache_clear()

    denied = client.post(f"/webhooks/wuzapi/{instance.id}", json=PAYLOAD)
    by_header = client.post(
        f"/webhooks/wuzapi/{instance.id}", json=PAYLOAD, headers={"X-Webhook-Secret": "shh"}
    )
    by_query = client.post(f"/webhooks/wuzapi/{instance.id}?secret=shh", json=PAYLOAD)

    assert denied.status_code == 401
    assert denied.json()["error"] == "invalid_webhook_secret"
    assert by_header.status_code == 200
    assert by_query.status_code == 200


def test_unadaptable_payloads_are_acknowledged(client, instance, count_messages) -> None:
    url = f"/webhooks/wuzapi/{instance.id}"
    info = {**PAYLOAD["event"]["Info"], "Chat": "status@broadcast"}
    broadcast = {"type": "Message", "event": {**PAYLOAD["event"], "Info": info}}
    for body in (broadcast, {"type": "Presence", "event": {}}, {"type": "Message"}, [1, 2]):
        response = client.post(url, json=body)
        assert response.status_code == 200
        assert response.json() == {"accepted": True, "ignored": True}

    not_json = client.post(url, content=b"not json", headers={"Content-Type": "text/plain"})
    assert not_json.status_code == 200
    assert count_messages() == 0


def test_unavailable_media_is_dropped_with_200(client, instance) -> None:
    payload = {
        "type": "Message",
        "event": {
            "Info": {
                "ID": "VID-1",
                "Chat": "5511999@s.whatsapp.net",
                "Type": "media",
                "MediaType": "video",
                "Timestamp": "2024-01-01T00:00:00Z",
            },
            "Message": {"videoMessage": {"URL": "https://mmg.example/v.enc"}},
        },
    }
    response = client.post(f"/webhooks/wuzapi/{instance.id}", json=payload)

    assert response.status_code == 200
    assert response.json() == {
        "accepted": True,
        "dropped": True,
        "reason": "media_download_failed",
    }


def test_revoke_and_receipt_events(client, instance, count_messages) -> None:
    url = f"/webhooks/wuzapi/{instance.id}"
    client.post(url, json=PAYLOAD)

    receipt = client.post(
        url, json={"type": "ReadReceipt", "state": "Read", "event": {"MessageIDs": ["ABC123"]}}
    )
    revoke = client.post(
        url,
        json={
            "type": "Message",
            "event": {
                "Info": {**PAYLOAD["event"]["Info"], "ID": "REVOKE-1"},
                "Message": {"protocolMessage": {"type": 0, "key": {"ID": "ABC123"}}},
            },
        },
    )
    unknown_revoke = client.post(
        url,
        json={
            "type": "Message",
            "event": {
                "Info": {**PAYLOAD["event"]["Info"], "ID": "REVOKE-2"},
                "Message": {"protocolMessage": {"type": 0, "key": {"ID": "NOPE"}}},
            },
        },
    )

    assert receipt.json() == {"accepted": True, "updated": 1}
    assert revoke.json() == {"accepted": True, "deleted": True}
    assert unknown_revoke.status_code == 200
    assert unknown_revoke.json() == {"accepted": True, "deleted": False}
    with get_conn() as conn:
        message = queries.get_message(conn, "ABC123")
        assert count_messages() == 1
    assert message is not None and message.is_deleted and message.read


def test_storage_failure_is_500(client, instance, monkeypatch) -> None:
    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(queries, "insert_message_if_absent", broken)
    response = client.post(f"/webhooks/wuzapi/{instance.id}", json=PAYLOAD)

    assert response.status_code == 500
    assert response.json()["error"] == "webhook_processing_failed"
