from __future__ import annotations

import io
from typing import Callable, Optional
from uuid import UUID

import pytest

from ble_uart_bridge.config import BridgeConfig
from ble_uart_bridge.errors import ConnectError, DiscoveryError
from ble_uart_bridge.transport import Characteristic, GattLink

TX = UUID("6e400002-b5a3-f393-e0a9-e50e24dcca9e")
RX = UUID("6e400003-b5a3-f393-e0a9-e50e24dcca9e")
NX = UUID("49535343-4c8a-39b3-2f49-511cff073b7e")
TX_HANDLE = 0x0010
RX_HANDLE = 0x0012
NX_HANDLE = 0x0015


class FakeLink(GattLink):
    """In-memory GattLink recording every call in order."""

    def __init__(
        self,
        characteristics: Optional[list[Characteristic]] = None,
        *,
        fail_connect: bool = False,
        fail_discover: bool = False,
        fail_start: tuple[UUID, ...] = (),
        fail_stop: tuple[int, ...] = (),
        fail_write: Optional[Callable[[int], bool]] = None,
    ) -> None:
        super().__init__()
        self.characteristics = characteristics if characteristics is not None else []
        self.fail_connect = fail_connect
        self.fail_discover = fail_discover
        self.fail_start = fail_start
        self.fail_stop = fail_stop
        self.fail_write = fail_write
        self.calls: list[tuple] = []
        self.writes: list[bytes] = []
        self._connected = False

    @property
    def address(self) -> str:
        return "AA:BB:CC:DD:EE:FF"

    @property
    def is_connected(self) -> bool:
        return self._connected

    def calls_named(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]

    async def connect(self) -> None:
        self.calls.append(("connect",))
        if self.fail_connect:
            raise ConnectError("Failed to connect to AA:BB:CC:DD:EE:FF")
        self._connected = True

    async def disconnect(self) -> None:
        self.calls.append(("disconnect",))
        self._connected = False

    async def discover(self) -> list[Characteristic]:
        self.calls.append(("discover",))
        if self.fail_discover:
            raise DiscoveryError("Characteristic discovery failed: boom")
        return list(self.characteristics)

    async def write_without_response(self, handle: int, data: bytes) -> None:
        index = len(self.writes)
        self.calls.append(("write", handle, bytes(data)))
        if self.fail_write is not None and self.fail_write(index):
            raise OSError("write failed")
        self.writes.append(bytes(data))

    async def start_notify(self, uuid: UUID, handle: int) -> None:
        self.calls.append(("start_notify", uuid, handle))
        if uuid in self.fail_start:
            raise OSError("notify refused")

    async def stop_notify(self, handle: int) -> None:
        self.calls.append(("stop_notify", handle))
        if handle in self.fail_stop:
            raise OSError("stop refused")

    def notify(self, uuid: UUID, payload: bytes) -> None:
        self._deliver(uuid, payload)

    def drop(self) -> None:
        self._connected = False
        self._lost()


class RecordingConnection:
    """Synchronous stand-in for BridgeConnection's write entry point."""

    def __init__(self, fail_at: Optional[int] = None, exc: Optional[Exception] = None) -> None:
        self.fail_at = fail_at
        self.exc = exc if exc is not None else OSError("link down")
        self.writes: list[tuple[int, bytes]] = []

    def write_without_response(self, handle: int, data: bytes) -> None:
        if self.fail_at is not None and len(self.writes) == self.fail_at:
            raise self.exc
        self.writes.append((handle, bytes(data)))


class FlushCountingIO(io.BytesIO):
    def __init__(self) -> None:
        super().__init__()
        self.flushes = 0

    def flush(self) -> None:
        self.flushes += 1
        super().flush()


@pytest.fixture
def nus_chars() -> list[Characteristic]:
    return [
        Characteristic(UUID("00002a00-0000-1000-8000-00805f9b34fb"), 0x0003, ("read",)),
        Characteristic(TX, TX_HANDLE, ("write", "write-without-response")),
        Characteristic(RX, RX_HANDLE, ("notify",)),
    ]


@pytest.fixture
def nus_config() -> BridgeConfig:
    return BridgeConfig.from_profile("nus")
