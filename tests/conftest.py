import os
from pathlib import Path

import pytest

from zapbridge.channels.wuzapi.storage import ensure_media_root
from zapbridge.config import get_settings
from zapbridge.db import queries
from zapbridge.db.connection import get_conn
from zapbridge.db.migrations.runner import run_migrations


@pytest.fixture(autouse=True)
def test_env(tmp_path: Path):
    os.environ["APP_ENV"] = "dev"
    os.environ["APP_DB"] = str(tmp_path / "test.db")
    os.environ["PUBLIC_DIR"] = str(tmp_path / "public")
    os.environ["BACKEND_URL"] = "https://bridge.example"
    os.environ["PROXY_PORT"] = ""
    os.environ["WUZAPI_WEBHOOK_SECRET"] = ""
    os.environ["WUZAPI_ADMIN_URL"] = ""
    os.environ["WUZAPI_ADMIN_TOKEN"] = ""
    get_settings.cache_clear()
    run_migrations()
    ensure_media_root(str(tmp_path / "public"))
    yield
    get_settings.cache_clear()


@pytest.fixture
def media_root(tmp_path: Path) -> Path:
    return ensure_media_root(str(tmp_path / "public"))


@pytest.fixture
def instance():
    with get_conn() as conn:
        queries.insert_instance(
            conn,
            instance_id="wa_test",
            name="Support line",
            gateway_url="http://wuzapi.test",
            token="instance-token",
            farewell_message="Bye {{name}}!",
        )
        return queries.get_instance(conn, "wa_test")


class NotifyRecorder:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, object]]] = []

    def __call__(self, channel: str, payload: dict[str, object]) -> None:
        self.events.append((channel, payload))

    def channels(self) -> list[str]:
        return [channel for channel, _ in self.events]


@pytest.fixture
def notifications() -> NotifyRecorder:
    return NotifyRecorder()


@pytest.fixture
def count_messages():
    def count(message_id: str | None = None) -> int:
        with get_conn() as conn:
            if message_id is None:
                row = conn.execute("SELECT COUNT(*) FROM messages").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM messages WHERE id=?", (message_id,)
                ).fetchone()
        return int(row[0])

    return count
