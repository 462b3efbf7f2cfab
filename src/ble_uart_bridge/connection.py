"""Single checked authority over the bridge's BLE link.

Two execution contexts share one ``GattLink``. The event loop subscribes,
unsubscribes and disconnects. The input pump thread writes. Neither touches
the link directly. Both go through ``BridgeConnection``, which tracks a
three-step lifecycle:

- ``OPEN``: every operation is accepted.
- ``CLOSING``: writes are refused. Unsubscribe and disconnect still go through
  so the controller can finish teardown.
- ``CLOSED``: every operation raises ``LinkClosedError``.

Writes from the pump thread are marshalled onto the event loop with
``asyncio.run_coroutine_threadsafe``. The pending futures are tracked and
cancelled when the connection leaves ``OPEN``. A pump blocked on an
in-flight write therefore observes a failure instead of waiting on a loop
that is tearing down.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import enum
import logging
import threading
from typing import Optional
from uuid import UUID

from .errors import LinkClosedError
from .transport import Characteristic, GattLink

logger = logging.getLogger(__name__)


class LinkState(enum.Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class BridgeConnection:
    """Owns the ``GattLink`` for one session and gates access to it."""

    def __init__(self, link: GattLink, loop: asyncio.AbstractEventLoop) -> None:
        self._link = link
        self._loop = loop
        self._lock = threading.Lock()
        self._state = LinkState.OPEN
        self._pending: set[concurrent.futures.Future[None]] = set()

    @property
    def link(self) -> GattLink:
        """The wrapped link. Callers outside this module must not use it for I/O."""
        return self._link

    @property
    def state(self) -> LinkState:
        """Current lifecycle state, read under the connection lock."""
        with self._lock:
            return self._state

    @property
    def is_open(self) -> bool:
        """True until ``begin_close()`` or ``disconnect()`` has run."""
        return self.state is LinkState.OPEN

    def _check(self, operation: str, *allowed: LinkState) -> None:
        with self._lock:
            state = self._state
        if state not in allowed:
            raise LinkClosedError(f"Cannot {operation}: connection is {state.value}")

    # -- pump thread -------------------------------------------------------

    def write_without_response(
        self, handle: int, data: bytes, timeout: Optional[float] = None
    ) -> None:
        """Write ``data`` from a thread other than the event loop.

        Blocks until the loop has handed the write to the stack.

        Raises:
            LinkClosedError: The connection left ``OPEN`` before or during
                the write, or the event loop is gone.
            Exception: Whatever the stack raised for this write.
        """
        with self._lock:
            if self._state is not LinkState.OPEN:
                raise LinkClosedError(
                    f"Cannot write: connection is {self._state.value}"
                )
            coro = self._link.write_without_response(handle, data)
            try:
                future = asyncio.run_coroutine_threadsafe(coro, self._loop)
            except RuntimeError as e:
                # Loop already closed
                coro.close()
                raise LinkClosedError(f"Cannot write: {e}") from e
            self._pending.add(future)

        try:
            future.result(timeout)
        except concurrent.futures.CancelledError as e:
            raise LinkClosedError("Write abandoned: connection closed") from e
        finally:
            with self._lock:
                self._pending.discard(future)

    # -- event loop --------------------------------------------------------

    async def discover(self) -> list[Characteristic]:
        """Run discovery on the link. Only allowed while ``OPEN``."""
        self._check("discover characteristics", LinkState.OPEN)
        return await self._link.discover()

    async def start_notify(self, uuid: UUID, handle: int) -> None:
        """Subscribe to ``handle``. Only allowed while ``OPEN``."""
        self._check("start notifications", LinkState.OPEN)
        await self._link.start_notify(uuid, handle)

    async def stop_notify(self, handle: int) -> None:
        """Unsubscribe from ``handle``. Still allowed while ``CLOSING`` so teardown can finish."""
        self._check("stop notifications", LinkState.OPEN, LinkState.CLOSING)
        await self._link.stop_notify(handle)

    def begin_close(self) -> None:
        """Invalidate the connection for writers; teardown may proceed.

        Idempotent. Pending cross-thread writes are cancelled.
        """
        with self._lock:
            if self._state is not LinkState.OPEN:
                return
            self._state = LinkState.CLOSING
            pending = list(self._pending)
        for future in pending:
            future.cancel()
        logger.debug("Connection closing: %d pending writes cancelled", len(pending))

    async def disconnect(self) -> None:
        """Disconnect the link exactly once; later calls raise.

        The connection is ``CLOSED`` afterwards even if the stack failed.
        """
        self.begin_close()
        with self._lock:
            if self._state is LinkState.CLOSED:
                raise LinkClosedError("Cannot disconnect: connection is closed")
            self._state = LinkState.CLOSED
        await self._link.disconnect()
