"""Contact and ticket services the message pipelines delegate to."""

from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass
from typing import Any, Protocol

from zapbridge.channels.wuzapi import identity
from zapbridge.db import queries
from zapbridge.db.connection import get_conn


@dataclass(frozen=True, slots=True)
class Contact:
    id: int
    number: str
    name: str
    is_group: bool = False

    @property
    def address(self) -> str:
        return self.number if "@" in self.number else f"{self.number}{identity.CANONICAL_SUFFIX}"

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Contact:
        return cls(
            id=int(row["id"]),
            number=str(row["number"]),
            name=str(row["name"]),
            is_group=bool(row["is_group"]),
        )


@dataclass(frozen=True, slots=True)
class Ticket:
    id: int
    status: str
    instance_id: str
    contact: Contact
    unread_messages: int = 0
    last_message: str = ""

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


def format_body(body: str, contact: Contact) -> str:
    """Fill ``{{name}}`` placeholders with the contact's name."""
    return body.replace("{{name}}", contact.name)


class ContactService(Protocol):
    def resolve(self, address: str, display_name: str | None = None) -> Contact: ...


class TicketService(Protocol):
    def find_or_create(self, contact: Contact, instance_id: str, unread: int) -> Ticket: ...

    def get(self, ticket_id: int) -> Ticket | None: ...

    def update_last_message(self, ticket_id: int, summary: str) -> None: ...

    def bump_unread(self, ticket_id: int, count: int = 1) -> None: ...


class SqliteContactService:
    def resolve(self, address: str, display_name: str | None = None) -> Contact:
        number = identity.address_number(address)
        with get_conn() as conn:
            row = queries.upsert_contact(
                conn,
                number=number,
                name=(display_name or "").strip() or number,
                is_group=identity.is_group(address),
            )
        return Contact.from_row(row)


class SqliteTicketService:
    def find_or_create(self, contact: Contact, instance_id: str, unread: int) -> Ticket:
        with get_conn() as conn:
            row = queries.ensure_open_ticket(
                conn, contact_id=contact.id, instance_id=instance_id, unread=unread
            )
        return self._ticket(row, contact)

    def get(self, ticket_id: int) -> Ticket | None:
        with get_conn() as conn:
            row = queries.get_ticket(conn, ticket_id)
            if row is None:
                return None
            contact_row = queries.get_contact(conn, int(row["contact_id"]))
        if contact_row is None:
            return None
        return self._ticket(row, Contact.from_row(contact_row))

    def update_last_message(self, ticket_id: int, summary: str) -> None:
        with get_conn() as conn:
            queries.update_ticket_last_message(conn, ticket_id, summary)

    def bump_unread(self, ticket_id: int, count: int = 1) -> None:
        with get_conn() as conn:
            queries.increment_ticket_unread(conn, ticket_id, count)

    @staticmethod
    def _ticket(row: sqlite3.Row, contact: Contact) -> Ticket:
        return Ticket(
            id=int(row["id"]),
            status=str(row["status"]),
            instance_id=str(row["instance_id"]),
            contact=contact,
            unread_messages=int(row["unread_messages"]),
            last_message=str(row["last_message"]),
        )
