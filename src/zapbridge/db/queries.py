"""Query helpers for instances, contacts, tickets and messages."""

import sqlite3
from datetime import UTC, datetime

from zapbridge.channels.wuzapi.models import Instance, Message


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


# -- instances -------------------------------------------------------------

_INSTANCE_COLUMNS = (
    "id, name, gateway_url, token, farewell_message, status, qrcode, provider_user_id"
)


def insert_instance(
    conn: sqlite3.Connection,
    *,
    instance_id: str,
    name: str,
    gateway_url: str,
    token: str,
    farewell_message: str = "",
    provider_user_id: str = "",
) -> None:
    now = now_iso()
    conn.execute(
        (
            "INSERT INTO whatsapp_instances("
            "id, name, gateway_url, token, farewell_message, provider_user_id, "
            "created_at, updated_at"
            ") VALUES(?,?,?,?,?,?,?,?)"
        ),
        (
            instance_id,
            name,
            gateway_url.strip(),
            token.strip(),
            farewell_message,
            provider_user_id,
            now,
            now,
        ),
    )


def get_instance(conn: sqlite3.Connection, instance_id: str) -> Instance | None:
    row = conn.execute(
        f"SELECT {_INSTANCE_COLUMNS} FROM whatsapp_instances WHERE id=? LIMIT 1",
        (instance_id,),
    ).fetchone()
    return Instance.from_row(row) if row is not None else None


def list_instances(conn: sqlite3.Connection) -> list[Instance]:
    rows = conn.execute(
        f"SELECT {_INSTANCE_COLUMNS} FROM whatsapp_instances ORDER BY created_at ASC"
    ).fetchall()
    return [Instance.from_row(row) for row in rows]


def update_instance_session(
    conn: sqlite3.Connection, instance_id: str, *, status: str, qrcode: str = ""
) -> bool:
    """Store the session state; returns True when the status actually changed."""
    cur = conn.execute(
        (
            "UPDATE whatsapp_instances SET status=?, qrcode=?, updated_at=? "
            "WHERE id=? AND (status!=? OR qrcode!=?)"
        ),
        (status, qrcode, now_iso(), instance_id, status, qrcode),
    )
    return cur.rowcount > 0


def delete_instance(conn: sqlite3.Connection, instance_id: str) -> bool:
    cur = conn.execute("DELETE FROM whatsapp_instances WHERE id=?", (instance_id,))
    return cur.rowcount > 0


# -- contacts --------------------------------------------------------------


def upsert_contact(
    conn: sqlite3.Connection, *, number: str, name: str, is_group: bool
) -> sqlite3.Row:
    now = now_iso()
    # a real name replaces a number placeholder, never the other way round
    conn.execute(
        (
            "INSERT INTO contacts(number, name, is_group, created_at, updated_at) "
            "VALUES(?,?,?,?,?) "
            "ON CONFLICT(number) DO UPDATE SET "
            "name=CASE WHEN excluded.name!=contacts.number THEN excluded.name "
            "ELSE contacts.name END, "
            "updated_at=excluded.updated_at"
        ),
        (number, name, 1 if is_group else 0, now, now),
    )
    return conn.execute(
        "SELECT id, number, name, is_group FROM contacts WHERE number=? LIMIT 1", (number,)
    ).fetchone()


def get_contact(conn: sqlite3.Connection, contact_id: int) -> sqlite3.Row | None:
    return conn.execute(
        "SELECT id, number, name, is_group FROM contacts WHERE id=? LIMIT 1", (contact_id,)
    ).fetchone()


# -- tickets ---------------------------------------------------------------


def get_open_ticket(
    conn: sqlite3.Connection, contact_id: int, instance_id: str
) -> sqlite3.Row | None:
    return conn.execute(
        (
            "SELECT id, contact_id, instance_id, status, unread_messages, last_message "
            "FROM tickets WHERE contact_id=? AND instance_id=? AND status!='closed' "
            "ORDER BY id DESC LIMIT 1"
        ),
        (contact_id, instance_id),
    ).fetchone()


def ensure_open_ticket(
    conn: sqlite3.Connection, *, contact_id: int, instance_id: str, unread: int
) -> sqlite3.Row:
    row = get_open_ticket(conn, contact_id, instance_id)
    if row is None:
        now = now_iso()
        try:
            conn.execute(
                (
                    "INSERT INTO tickets("
                    "contact_id, instance_id, status, unread_messages, last_message, "
                    "created_at, updated_at"
                    ") VALUES(?,?,?,?,?,?,?)"
                ),
                (contact_id, instance_id, "pending", unread, "", now, now),
            )
        except sqlite3.IntegrityError:
            # a concurrent delivery opened it first
            row = get_open_ticket(conn, contact_id, instance_id)
            if row is None:
                raise
        else:
            return get_open_ticket(conn, contact_id, instance_id)
    if unread:
        increment_ticket_unread(conn, int(row["id"]), unread)
        row = get_ticket(conn, int(row["id"]))
    return row


def increment_ticket_unread(conn: sqlite3.Connection, ticket_id: int, count: int = 1) -> None:
    conn.execute(
        "UPDATE tickets SET unread_messages=unread_messages+?, updated_at=? WHERE id=?",
        (count, now_iso(), ticket_id),
    )


def get_ticket(conn: sqlite3.Connection, ticket_id: int) -> sqlite3.Row | None:
    return conn.execute(
        (
            "SELECT id, contact_id, instance_id, status, unread_messages, last_message "
            "FROM tickets WHERE id=? LIMIT 1"
        ),
        (ticket_id,),
    ).fetchone()


def update_ticket_last_message(conn: sqlite3.Connection, ticket_id: int, summary: str) -> None:
    conn.execute(
        "UPDATE tickets SET last_message=?, updated_at=? WHERE id=?",
        (summary, now_iso(), ticket_id),
    )


# -- messages --------------------------------------------------------------


def insert_message_if_absent(conn: sqlite3.Connection, message: Message) -> bool:
    """Insert keyed on ``messages.id``; False means the id was already stored."""
    cur = conn.execute(
        (
            "INSERT OR IGNORE INTO messages("
            "id, ticket_id, contact_id, quoted_msg_id, body, media_type, media_url, "
            "file_name, from_me, read, ack, is_deleted, created_at, updated_at"
            ") VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?)"
        ),
        (
            message.id,
            message.ticket_id,
            message.contact_id,
            message.quoted_msg_id,
            message.body,
            message.media_type,
            message.media_url,
            message.file_name,
            1 if message.from_me else 0,
            1 if message.read else 0,
            int(message.ack),
            1 if message.is_deleted else 0,
            message.created_at.isoformat(),
            now_iso(),
        ),
    )
    return cur.rowcount == 1


def get_message(conn: sqlite3.Connection, message_id: str) -> Message | None:
    row = conn.execute("SELECT * FROM messages WHERE id=? LIMIT 1", (message_id,)).fetchone()
    return Message.from_row(row) if row is not None else None


def mark_message_deleted(conn: sqlite3.Connection, message_id: str) -> bool:
    cur = conn.execute(
        "UPDATE messages SET is_deleted=1, updated_at=? WHERE id=? AND is_deleted=0",
        (now_iso(), message_id),
    )
    return cur.rowcount > 0


def update_message_ack(
    conn: sqlite3.Connection, message_id: str, *, ack: int, read: bool
) -> bool:
    """Raise ``ack`` monotonically; ``read`` only ever flips on."""
    cur = conn.execute(
        (
            "UPDATE messages SET ack=MAX(ack, ?), read=MAX(read, ?), updated_at=? "
            "WHERE id=? AND (ack<? OR read<?)"
        ),
        (ack, 1 if read else 0, now_iso(), message_id, ack, 1 if read else 0),
    )
    return cur.rowcount > 0
