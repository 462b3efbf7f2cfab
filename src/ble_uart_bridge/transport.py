"""BLE stack seam for the UART bridge.

The bridge core never touches bleak directly. It talks to a ``GattLink``,
an intentionally small interface exposing just the primitives a serial-over-BLE
bridge needs:

- connect / disconnect
- one-shot characteristic discovery
- write-without-response to a characteristic handle
- start / stop notifications on a characteristic handle, with payloads
  delivered to a single notification handler as ``(uuid, payload)``

``BleakLink`` is the production implementation on top of ``bleak``. Tests
substitute an in-memory link implementing the same interface.

Requirements:
- bleak: Cross-platform BLE library for device communication
- asyncio: All link coroutines run on the bridge's event loop thread
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional
from uuid import UUID

from bleak import BleakClient
from bleak.exc import BleakError

from .errors import ConnectError, DiscoveryError

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[UUID, bytes], None]
DisconnectHandler = Callable[[], None]


@dataclass(frozen=True)
class Characteristic:
    """One characteristic returned by discovery.

    Attributes:
        uuid: 128-bit characteristic UUID.
        handle: Session-scoped ATT value handle. 0x0000 is reserved and never
            usable for write or notify.
        properties: GATT property names as reported by the stack
            (``"write-without-response"``, ``"notify"``, ...).
    """

    uuid: UUID
    handle: int
    properties: tuple[str, ...] = ()


class GattLink(ABC):
    """Abstract BLE connection used by the bridge.

    Implementations deliver notifications on the event loop thread by calling
    the handler installed with ``set_notification_handler``. Every coroutine
    is awaited on that same loop.
    """

    def __init__(self) -> None:
        self._notification_handler: Optional[NotificationHandler] = None
        self._disconnect_handler: Optional[DisconnectHandler] = None

    def set_notification_handler(self, handler: Optional[NotificationHandler]) -> None:
        """Install the single callback receiving every notification."""
        self._notification_handler = handler

    def set_disconnect_handler(self, handler: Optional[DisconnectHandler]) -> None:
        """Install a callback fired when the peripheral drops the link."""
        self._disconnect_handler = handler

    def _deliver(self, uuid: UUID, payload: bytes) -> None:
        handler = self._notification_handler
        if handler is None:
            logger.debug("Notification for %s dropped: no handler installed", uuid)
            return
        handler(uuid, payload)

    def _lost(self) -> None:
        handler = self._disconnect_handler
        if handler is not None:
            handler()

    @property
    @abstractmethod
    def address(self) -> str:
        """Peripheral address this link targets."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """True while the underlying connection is up."""

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the peripheral.

        Raises:
            ConnectError: The stack could not establish the connection.
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the connection."""

    @abstractmethod
    async def discover(self) -> list[Characteristic]:
        """Return every characteristic the peripheral exposes.

        Raises:
            DiscoveryError: The discovery call itself failed.
        """

    @abstractmethod
    async def write_without_response(self, handle: int, data: bytes) -> None:
        """Write ``data`` to the characteristic at ``handle`` without response."""

    @abstractmethod
    async def start_notify(self, uuid: UUID, handle: int) -> None:
        """Enable notifications on ``handle`` and deliver them tagged ``uuid``."""

    @abstractmethod
    async def stop_notify(self, handle: int) -> None:
        """Disable notifications on ``handle``."""


class BleakLink(GattLink):
    """``GattLink`` backed by ``bleak.BleakClient``.

    bleak performs service discovery as part of ``connect()``. ``discover()``
    reads the resulting service collection once, which matches the one-shot
    discovery contract without a second round trip.
    """

    def __init__(self, address: str, *, timeout: float = 10.0) -> None:
        super().__init__()
        self._address = address
        self._timeout = timeout
        self._client: Optional[BleakClient] = None

    @property
    def address(self) -> str:
        return self._address

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    def _on_disconnect(self, _: BleakClient) -> None:
        if self._client is None:
            # Our own disconnect()
            return
        logger.warning("BLE connection lost (callback): %s", self._address)
        self._lost()

    def _require_client(self) -> BleakClient:
        if self._client is None:
            raise BleakError("Not connected")
        return self._client

    async def connect(self) -> None:
        logger.info("BLE connection starting: %s", self._address)
        client = BleakClient(
            self._address,
            disconnected_callback=self._on_disconnect,
            timeout=self._timeout,
        )
        try:
            await client.connect()
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            raise ConnectError(
                f"Failed to connect to {self._address}: {type(e).__name__}: {e}"
            ) from e
        if not client.is_connected:
            raise ConnectError(f"Failed to connect to {self._address}")
        self._client = client
        logger.info("BLE connection established: %s", self._address)

    async def disconnect(self) -> None:
        client = self._client
        self._client = None
        if client is None:
            return
        logger.info("BLE disconnect: %s", self._address)
        await client.disconnect()

    async def discover(self) -> list[Characteristic]:
        try:
            client = self._require_client()
            services = client.services
            if services is None:
                raise BleakError("Service discovery has not completed")
            chars = [
                Characteristic(
                    uuid=UUID(char.uuid),
                    handle=char.handle,
                    properties=tuple(char.properties),
                )
                for char in services.characteristics.values()
            ]
        except (BleakError, ValueError) as e:
            raise DiscoveryError(f"Characteristic discovery failed: {e}") from e
        logger.debug("Discovery completed: %d characteristics", len(chars))
        return chars

    async def write_without_response(self, handle: int, data: bytes) -> None:
        client = self._require_client()
        await client.write_gatt_char(handle, data, response=False)

    async def start_notify(self, uuid: UUID, handle: int) -> None:
        client = self._require_client()
        await client.start_notify(
            handle, lambda _, data: self._deliver(uuid, bytes(data))
        )

    async def stop_notify(self, handle: int) -> None:
        client = self._require_client()
        await client.stop_notify(handle)
