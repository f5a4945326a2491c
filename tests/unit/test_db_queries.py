from datetime import UTC, datetime

from zapbridge.channels.wuzapi.models import AckLevel, Message
from zapbridge.config import get_settings
from zapbridge.db import queries
from zapbridge.db.connection import connect, get_conn, missing_tables
from zapbridge.tickets.service import SqliteContactService, SqliteTicketService, format_body


def _message(message_id: str, ticket_id: int, **overrides) -> Message:
    values = {
        "id": message_id,
        "ticket_id": ticket_id,
        "contact_id": None,
        "body": "hi",
        "media_type": "text",
        "created_at": datetime(2024, 1, 1, tzinfo=UTC),
    }
    values.update(overrides)
    return Message(**values)


def test_contact_name_placeholder_is_replaced_but_never_reverted() -> None:
    contacts = SqliteContactService()
    placeholder = contacts.resolve("5511999@c.us")
    named = contacts.resolve("5511999@c.us", "Maria")
    unnamed_again = contacts.resolve("5511999@c.us")

    assert placeholder.name == "5511999"
    assert named.id == placeholder.id
    assert named.name == "Maria"
    assert unnamed_again.name == "Maria"


def test_group_contacts_are_flagged() -> None:
    group = SqliteContactService().resolve("120363111@g.us", "Team")
    assert group.is_group is True
    assert group.number == "120363111@g.us"
    assert group.address == "120363111@g.us"


def test_open_ticket_is_reused_and_counts_unread(instance) -> None:
    contact = SqliteContactService().resolve("5511999@c.us", "Maria")
    tickets = SqliteTicketService()

    first = tickets.find_or_create(contact, instance.id, 1)
    second = tickets.find_or_create(contact, instance.id, 1)
    outgoing = tickets.find_or_create(contact, instance.id, 0)

    assert first.id == second.id == outgoing.id
    assert first.status == "pending"
    assert outgoing.unread_messages == 2


def test_closed_ticket_is_not_reused(instance) -> None:
    contact = SqliteContactService().resolve("5511999@c.us", "Maria")
    tickets = SqliteTicketService()
    first = tickets.find_or_create(contact, instance.id, 1)
    with get_conn() as conn:
        conn.execute("UPDATE tickets SET status='closed' WHERE id=?", (first.id,))

    assert tickets.find_or_create(contact, instance.id, 1).id != first.id


def test_insert_message_if_absent_and_ack_monotonicity(instance) -> None:
    contact = SqliteContactService().resolve("5511999@c.us")
    ticket = SqliteTicketService().find_or_create(contact, instance.id, 0)

    with get_conn() as conn:
        assert queries.insert_message_if_absent(conn, _message("M1", ticket.id)) is True
        assert queries.insert_message_if_absent(conn, _message("M1", ticket.id, body="x")) is False
        assert queries.update_message_ack(conn, "M1", ack=AckLevel.READ, read=True) is True
        assert queries.update_message_ack(conn, "M1", ack=AckLevel.DEVICE, read=False) is False
        stored = queries.get_message(conn, "M1")
        assert queries.mark_message_deleted(conn, "M1") is True
        assert queries.mark_message_deleted(conn, "M1") is False

    assert stored is not None
    assert stored.body == "hi"
    assert stored.ack == AckLevel.READ
    assert stored.read is True


def test_deleting_instance_removes_its_tickets_and_messages(instance, count_messages) -> None:
    contact = SqliteContactService().resolve("5511999@c.us")
    ticket = SqliteTicketService().find_or_create(contact, instance.id, 1)
    with get_conn() as conn:
        queries.insert_message_if_absent(conn, _message("M1", ticket.id))
        assert queries.delete_instance(conn, instance.id) is True
        assert queries.get_ticket(conn, ticket.id) is None
        assert count_messages() == 0


def test_update_instance_session_reports_changes(instance) -> None:
    with get_conn() as conn:
        assert queries.update_instance_session(conn, instance.id, status="qrcode", qrcode="Q")
        assert not queries.update_instance_session(conn, instance.id, status="qrcode", qrcode="Q")
        assert queries.get_instance(conn, instance.id).qrcode == "Q"


def test_format_body_fills_name() -> None:
    contact = SqliteContactService().resolve("5511999@c.us", "Maria")
    assert format_body("Bye {{name}}, {{name}}!", contact) == "Bye Maria, Maria!"
    assert format_body("plain", contact) == "plain"


def test_connection_uses_configured_busy_timeout(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("DB_BUSY_TIMEOUT_SECONDS", "5")
    get_settings.cache_clear()
    conn = connect(str(tmp_path / "other" / "bridge.db"))
    try:
        assert conn.execute("PRAGMA busy_timeout").fetchone()[0] == 5000
        assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
        assert missing_tables(conn) == ["whatsapp_instances", "contacts", "tickets", "messages"]
    finally:
        conn.close()
    with get_conn() as conn:
        assert missing_tables(conn) == []


def test_unread_is_bumped_separately_from_ticket_lookup(instance) -> None:
    contact = SqliteContactService().resolve("5511999@c.us")
    tickets = SqliteTicketService()
    ticket = tickets.find_or_create(contact, instance.id, 0)
    tickets.bump_unread(ticket.id)
    tickets.bump_unread(ticket.id, 2)
    assert tickets.get(ticket.id).unread_messages == 3
