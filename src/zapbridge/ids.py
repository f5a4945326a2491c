"""Identifier helpers."""

import secrets
import string
from uuid import uuid4

_SUFFIX_ALPHABET = string.ascii_letters + string.digits


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


def new_correlation_id() -> str:
    """Message id assigned before an outbound send and reused by the provider."""
    return str(uuid4())


def random_suffix(length: int = 5) -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))
