"""Notification routing and rendering.

The BLE stack delivers every notification through a single callback as
``(uuid, payload)``. ``NotificationRouter`` keeps one route per characteristic
UUID and forwards payloads of active subscriptions to that route's consumer.
Each UUID's stream stays in arrival order. Nothing relates the order of
different UUIDs.

``LineRenderer`` is the stock consumer. It writes the peripheral's output
to a byte sink and turns carriage returns into line breaks, since UART
firmware commonly ends lines with a bare CR.
"""

from __future__ import annotations

import logging
import sys
import threading
from dataclasses import dataclass
from typing import BinaryIO, Callable, Optional
from uuid import UUID

from .connection import BridgeConnection
from .errors import SubscriptionError

logger = logging.getLogger(__name__)

Consumer = Callable[[bytes], None]

CR = b"\r"
LINE_BREAK = b"\n"


class LineRenderer:
    """Render notification payloads to a byte stream.

    Every 0x0D byte becomes 0x0A. All other bytes, existing 0x0A included,
    pass through unchanged. The sink is flushed after each payload so output
    stays in step with anything else written to the terminal.

    A lock may be shared between renderers writing to the same sink so that
    one payload is never split by another.
    """

    def __init__(
        self, sink: Optional[BinaryIO] = None, lock: Optional[threading.Lock] = None
    ) -> None:
        self._sink = sink if sink is not None else sys.stdout.buffer
        self._lock = lock if lock is not None else threading.Lock()

    @staticmethod
    def render(payload: bytes) -> bytes:
        """Replace every carriage return with a line break."""
        return payload.replace(CR, LINE_BREAK)

    def __call__(self, payload: bytes) -> None:
        data = self.render(payload)
        with self._lock:
            self._sink.write(data)
            self._sink.flush()


@dataclass
class _Route:
    consumer: Consumer
    active: bool = False


class NotificationRouter:
    """Demultiplex notifications by source UUID.

    Args:
        connection: Checked connection used to subscribe and unsubscribe.
        handles: Resolved handle for each UUID that may be subscribed.
    """

    def __init__(self, connection: BridgeConnection, handles: dict[UUID, int]) -> None:
        self._connection = connection
        self._handles = handles
        self._routes: dict[UUID, _Route] = {}

    def register(self, uuid: UUID, consumer: Consumer) -> None:
        """Install ``consumer`` for ``uuid``, replacing any previous one.

        The subscription state is kept; registering never subscribes.
        """
        route = self._routes.get(uuid)
        if route is None:
            self._routes[uuid] = _Route(consumer)
        else:
            route.consumer = consumer
        logger.debug("Consumer registered for %s", uuid)

    def is_active(self, uuid: UUID) -> bool:
        """True while notifications for ``uuid`` are subscribed."""
        route = self._routes.get(uuid)
        return route is not None and route.active

    def active_uuids(self) -> list[UUID]:
        """UUIDs with an active subscription, in registration order."""
        return [uuid for uuid, route in self._routes.items() if route.active]

    async def start(self, uuid: UUID) -> None:
        """Ask the stack to start notifications for ``uuid``.

        Raises:
            SubscriptionError: No consumer or handle is known for ``uuid``, or the
                stack refused. The subscription stays inactive.
        """
        route = self._routes.get(uuid)
        if route is None:
            raise SubscriptionError(uuid, "start", "no consumer registered")
        if route.active:
            return
        handle = self._handles.get(uuid)
        if handle is None:
            raise SubscriptionError(uuid, "start", "characteristic not resolved")

        logger.info("Starting notification subscription: char=%s", uuid)
        try:
            await self._connection.start_notify(uuid, handle)
        except Exception as e:
            raise SubscriptionError(uuid, "start", f"{type(e).__name__}: {e}") from e
        route.active = True

    async def stop(self, uuid: UUID) -> None:
        """Ask the stack to stop notifications for ``uuid``.

        Unknown or inactive UUIDs are a no-op. The route is inactive afterwards
        even if the stack call fails.

        Raises:
            SubscriptionError: The stack failed to unsubscribe.
        """
        route = self._routes.get(uuid)
        if route is None or not route.active:
            return
        route.active = False

        logger.info("Stopping notification subscription: char=%s", uuid)
        try:
            await self._connection.stop_notify(self._handles[uuid])
        except Exception as e:
            raise SubscriptionError(uuid, "stop", f"{type(e).__name__}: {e}") from e

    def dispatch(self, uuid: UUID, payload: bytes) -> None:
        """Forward a notification to the consumer registered for ``uuid``.

        Called on the event loop for every notification. Payloads for unknown
        or inactive UUIDs are dropped. Consumer errors are logged, never
        raised into the BLE stack.
        """
        route = self._routes.get(uuid)
        if route is None or not route.active:
            logger.debug("Notification dropped: %d bytes from %s", len(payload), uuid)
            return
        try:
            route.consumer(payload)
        except Exception:
            logger.exception("Consumer for %s failed", uuid)
