"""Error taxonomy for the BLE UART bridge.

Fatal startup errors (``ConnectError``, ``UuidParseError``, ``DiscoveryError``,
``CharacteristicNotFound``) abort the bridge with exit code 1. The remaining
errors are surfaced through logging while the components that still work keep
running.
"""

from __future__ import annotations

from typing import Optional
from uuid import UUID


class BridgeError(Exception):
    """Base class for every error raised by the bridge."""


class ConnectError(BridgeError):
    """The BLE stack could not connect to the peripheral."""


class UuidParseError(BridgeError, ValueError):
    """A configured characteristic UUID string is not a valid UUID."""

    def __init__(self, text: str, reason: str = "") -> None:
        self.text = text
        message = f"Invalid characteristic UUID {text!r}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class DiscoveryError(BridgeError):
    """Characteristic discovery failed as a whole."""


class CharacteristicNotFound(BridgeError):
    """A required characteristic was not resolved to a usable handle.

    Attributes:
        uuid: The required characteristic UUID.
        invalid_handle: True when discovery returned the characteristic but
            with handle 0x0000, False when it was absent altogether.
    """

    def __init__(self, uuid: UUID, invalid_handle: bool = False) -> None:
        self.uuid = uuid
        self.invalid_handle = invalid_handle
        if invalid_handle:
            message = f"Characteristic {uuid} was discovered with an invalid handle"
        else:
            message = f"Characteristic {uuid} not found on peripheral"
        super().__init__(message)


class SubscriptionError(BridgeError):
    """Starting or stopping a notification stream failed."""

    def __init__(self, uuid: UUID, operation: str, reason: str = "") -> None:
        self.uuid = uuid
        self.operation = operation
        message = f"Failed to {operation} notifications for {uuid}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class WriteError(BridgeError):
    """A chunked write stopped at a failed segment.

    Attributes:
        bytes_sent: Bytes successfully handed to the stack before the failure.
        bytes_remaining: Bytes of the payload that were never sent.
    """

    def __init__(
        self, bytes_sent: int, bytes_remaining: int, handle: Optional[int] = None
    ) -> None:
        self.bytes_sent = bytes_sent
        self.bytes_remaining = bytes_remaining
        self.handle = handle
        target = f" to handle 0x{handle:04x}" if handle is not None else ""
        super().__init__(
            f"Write{target} failed after {bytes_sent} bytes "
            f"({bytes_remaining} bytes not sent)"
        )


class ShutdownError(BridgeError):
    """A teardown step failed; exit proceeds regardless."""


class LinkClosedError(BridgeError):
    """The connection was used after it had been invalidated."""
