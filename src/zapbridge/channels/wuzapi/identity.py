"""Chat address normalization.

The provider may address the same person either by a privacy-preserving
linked identifier (``<digits>@lid``) or by the real network address
(``<digits>@s.whatsapp.net``). Both are folded into one canonical
``<digits>@c.us`` form so contact and ticket lookups see a single chat.
"""

from __future__ import annotations

LINKED_SUFFIX = "@lid"
NETWORK_SUFFIX = "@s.whatsapp.net"
CANONICAL_SUFFIX = "@c.us"
GROUP_SUFFIX = "@g.us"
BROADCAST_SUFFIX = "@broadcast"


def is_broadcast(address: str) -> bool:
    return address.strip().lower().endswith(BROADCAST_SUFFIX)


def normalize(raw_address: str, alternate_address: str | None = None) -> str | None:
    """Return the canonical address, or None for broadcast/status channels.

    A linked identifier is replaced by ``alternate_address`` when the latter
    is a real network address; otherwise the raw address is kept.
    """
    address = raw_address.strip()
    if not address or is_broadcast(address):
        return None

    alternate = (alternate_address or "").strip()
    if address.endswith(LINKED_SUFFIX) and NETWORK_SUFFIX in alternate:
        address = alternate

    if address.endswith(NETWORK_SUFFIX):
        return address[: -len(NETWORK_SUFFIX)] + CANONICAL_SUFFIX
    if address.endswith(LINKED_SUFFIX):
        return address[: -len(LINKED_SUFFIX)] + CANONICAL_SUFFIX
    return address


def address_number(canonical_address: str) -> str:
    """Bare number of a canonical address (``5511999@c.us`` -> ``5511999``)."""
    if canonical_address.endswith(CANONICAL_SUFFIX):
        return canonical_address[: -len(CANONICAL_SUFFIX)]
    return canonical_address


def is_group(canonical_address: str) -> bool:
    return canonical_address.endswith(GROUP_SUFFIX)
