"""Fragment outbound payloads into link-sized writes."""

from __future__ import annotations

import logging
from typing import Iterator

from .config import DEFAULT_MTU
from .connection import BridgeConnection
from .errors import WriteError

logger = logging.getLogger(__name__)


def segments(payload: bytes, mtu: int = DEFAULT_MTU) -> Iterator[bytes]:
    """Yield ``payload`` as consecutive slices of at most ``mtu`` bytes.

    An empty payload yields nothing.
    """
    if mtu < 1:
        raise ValueError(f"mtu must be at least 1, got {mtu}")
    view = memoryview(payload)
    for start in range(0, len(view), mtu):
        yield bytes(view[start : start + mtu])


class ChunkedWriter:
    """Send byte buffers to one characteristic with write-without-response.

    There is no acknowledgement on the link, so a returned ``send`` only means
    every segment was handed to the stack in order.
    """

    def __init__(self, mtu: int = DEFAULT_MTU) -> None:
        if mtu < 1:
            raise ValueError(f"mtu must be at least 1, got {mtu}")
        self.mtu = mtu

    def send(self, connection: BridgeConnection, handle: int, payload: bytes) -> None:
        """Write ``payload`` to ``handle`` in ordered ``mtu``-sized segments.

        Stops at the first failed segment.

        Raises:
            WriteError: Carries how many bytes went out before the failure and
                how many did not. The stack's exception is chained.
        """
        total = len(payload)
        sent = 0
        for segment in segments(payload, self.mtu):
            try:
                connection.write_without_response(handle, segment)
            except Exception as e:
                logger.debug(
                    "Segment write failed at offset %d/%d: %s", sent, total, e
                )
                raise WriteError(sent, total - sent, handle) from e
            sent += len(segment)
        logger.debug("Sent %d bytes to handle 0x%04x", total, handle)
