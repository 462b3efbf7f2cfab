"""Bridge configuration and the built-in serial-over-BLE profiles."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Iterable, Optional
from uuid import UUID

from bleak.uuids import normalize_uuid_str

from .errors import UuidParseError

logger = logging.getLogger(__name__)

# Nordic UART Service (NUS)
NUS_TX_CHAR = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"  # Write (client to device)
NUS_RX_CHAR = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"  # Notify (device to client)

# Microchip RN4871 "transparent UART"
RN4871_TX_CHAR = "49535343-1e4d-4bd9-ba61-23c647249616"
RN4871_RX_CHAR = "49535343-8841-43f4-a8d4-ecbe34729bb3"
RN4871_NX_CHAR = "49535343-4c8a-39b3-2f49-511cff073b7e"

DEFAULT_MTU = 20
DEFAULT_MAX_LINE = 256
DEFAULT_CONNECT_TIMEOUT = 10.0


class LineOverflow(str, enum.Enum):
    """What the input pump does with a line longer than ``max_line``."""

    SPLIT = "split"
    DROP = "drop"


@dataclass(frozen=True)
class UartProfile:
    """UUID layout of a serial-over-BLE peripheral.

    ``rx_uuids`` are subscribed for notifications. ``required_uuids`` must
    all be present in discovery, whether or not the bridge uses them.
    """

    name: str
    tx_uuid: str
    rx_uuids: tuple[str, ...]
    required_uuids: tuple[str, ...]


PROFILES: dict[str, UartProfile] = {
    "nus": UartProfile(
        name="nus",
        tx_uuid=NUS_TX_CHAR,
        rx_uuids=(NUS_RX_CHAR,),
        required_uuids=(NUS_TX_CHAR, NUS_RX_CHAR),
    ),
    # The RN4871 echoes on its TX characteristic and reports status on NX.
    "rn4871": UartProfile(
        name="rn4871",
        tx_uuid=RN4871_TX_CHAR,
        rx_uuids=(RN4871_TX_CHAR, RN4871_NX_CHAR),
        required_uuids=(RN4871_TX_CHAR, RN4871_RX_CHAR, RN4871_NX_CHAR),
    ),
}


def parse_uuid(text: str) -> UUID:
    """Parse a characteristic UUID string into a 128-bit ``UUID``.

    16-bit and 32-bit short forms are expanded against the Bluetooth base UUID.

    Raises:
        UuidParseError: If ``text`` is not a UUID in any accepted form.
    """
    try:
        return UUID(normalize_uuid_str(text.strip()))
    except (ValueError, TypeError, AttributeError) as e:
        raise UuidParseError(str(text), str(e)) from e


def _dedupe(uuids: Iterable[UUID]) -> tuple[UUID, ...]:
    seen: list[UUID] = []
    for u in uuids:
        if u not in seen:
            seen.append(u)
    return tuple(seen)


@dataclass(frozen=True)
class BridgeConfig:
    """Session configuration shared by every bridge component.

    Attributes:
        tx_uuid: Characteristic written with outbound input lines.
        rx_uuids: Characteristics subscribed for notifications.
        required_uuids: Characteristics that must resolve before streaming.
            Always includes ``tx_uuid`` and every ``rx_uuids`` entry.
        mtu: Largest write payload per segment.
        max_line: Largest input line read at once, terminator included.
        line_overflow: Policy for input lines longer than ``max_line``.
        nul_terminate: Append a NUL byte to every outbound line.
        connect_timeout: Passed through to the BLE stack's connect call.
    """

    tx_uuid: UUID
    rx_uuids: tuple[UUID, ...]
    required_uuids: tuple[UUID, ...]
    mtu: int = DEFAULT_MTU
    max_line: int = DEFAULT_MAX_LINE
    line_overflow: LineOverflow = LineOverflow.SPLIT
    nul_terminate: bool = False
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT

    def __post_init__(self) -> None:
        if self.mtu < 1:
            raise ValueError(f"mtu must be at least 1, got {self.mtu}")
        if self.max_line < 2:
            raise ValueError(f"max_line must be at least 2, got {self.max_line}")
        required = _dedupe((self.tx_uuid, *self.rx_uuids, *self.required_uuids))
        object.__setattr__(self, "rx_uuids", _dedupe(self.rx_uuids))
        object.__setattr__(self, "required_uuids", required)

    @classmethod
    def from_profile(
        cls,
        name: str = "nus",
        *,
        tx_uuid: Optional[str] = None,
        rx_uuids: Optional[Iterable[str]] = None,
        mtu: int = DEFAULT_MTU,
        max_line: int = DEFAULT_MAX_LINE,
        line_overflow: LineOverflow = LineOverflow.SPLIT,
        nul_terminate: bool = False,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ) -> "BridgeConfig":
        """Build a config from a named profile, with optional UUID overrides.

        When either UUID override is given, the profile's extra required UUIDs
        are dropped and only the effective tx/rx set is required.

        Raises:
            KeyError: Unknown profile name.
            UuidParseError: A profile or override UUID does not parse.
        """
        profile = PROFILES[name]
        rx_list = list(rx_uuids) if rx_uuids else []
        overridden = tx_uuid is not None or bool(rx_list)

        tx = parse_uuid(tx_uuid if tx_uuid is not None else profile.tx_uuid)
        rx = tuple(parse_uuid(u) for u in (rx_list or profile.rx_uuids))
        if overridden:
            required: tuple[UUID, ...] = ()
        else:
            required = tuple(parse_uuid(u) for u in profile.required_uuids)

        logger.debug(
            "Config built: profile=%s tx=%s rx=%s required=%s",
            name,
            tx,
            [str(u) for u in rx],
            [str(u) for u in required],
        )
        return cls(
            tx_uuid=tx,
            rx_uuids=rx,
            required_uuids=required,
            mtu=mtu,
            max_line=max_line,
            line_overflow=LineOverflow(line_overflow),
            nul_terminate=nul_terminate,
            connect_timeout=connect_timeout,
        )
