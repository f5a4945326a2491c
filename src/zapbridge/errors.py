"""Zapbridge exception hierarchy.

All zapbridge-specific exceptions inherit from ZapBridgeError. Nothing in
this package retries on its own; ``retryable`` is a hint for callers.

Two outcomes are not exceptions: an unadaptable webhook
payload is a ``None`` adapter result, and a duplicate message id is a
``False`` return from the idempotent insert.
"""


class ZapBridgeError(Exception):
    """Base exception for all zapbridge errors."""

    def __init__(self, message: str = "", *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class GatewayError(ZapBridgeError):
    """Transport-level failure talking to the provider gateway."""


class GatewayDispatchError(GatewayError):
    """An outbound send was rejected or never reached the provider."""


class MediaDownloadError(ZapBridgeError):
    """Inbound media could not be materialized. Fatal for that one message."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class TranscodeFailure(ZapBridgeError):
    """The external transcoder failed, timed out or is missing."""

    def __init__(self, reason: str, *, detail: str = "") -> None:
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


class InstanceNotFoundError(ZapBridgeError):
    """No provider instance is configured under the given id."""


class ConfigError(ZapBridgeError, ValueError):
    """Invalid or missing configuration."""
