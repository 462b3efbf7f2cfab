"""Bridge lifecycle: connect, resolve, stream, shut down once.

``BridgeController`` owns the connection and wires the other components
together on a single asyncio event loop:

1. **Connect**: the ``GattLink`` is connected and wrapped in a
   ``BridgeConnection``, the only object other components may use to reach
   the link.
2. **Resolve**: one discovery pass maps every required UUID to a handle.
   A missing UUID aborts startup before any subscription or write.
3. **Stream**: one ``LineRenderer`` is registered per receive UUID, the
   subscriptions are started, and the ``InputPump`` thread is launched.
4. **Shut down**: a cancellation event posted into the loop triggers the
   one-time teardown. The connection is invalidated for writers, every active
   subscription is stopped, then the link is disconnected.

Cancellation may come from SIGINT/SIGTERM, from the peripheral dropping the
link, or from ``request_cancel()`` on any thread. Signal handlers only post
the event. Teardown always runs as a normal coroutine on the loop.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import signal
import sys
import threading
from typing import BinaryIO, Callable, Optional
from uuid import UUID

from .config import BridgeConfig
from .connection import BridgeConnection
from .context import BridgeContext
from .errors import BridgeError, ShutdownError, SubscriptionError
from .pump import InputPump
from .resolver import CharacteristicResolver, require_handles
from .router import LineRenderer, NotificationRouter
from .transport import GattLink
from .writer import ChunkedWriter

logger = logging.getLogger(__name__)


class BridgeState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    STREAMING = "streaming"
    SHUTTING_DOWN = "shutting-down"


class BridgeController:
    """Run one bridge session over ``link``.

    Args:
        link: Unconnected BLE link to the peripheral.
        config: UUIDs, MTU and input policy for the session.
        source: Binary input stream for the pump (default: unbuffered stdin).
        sink: Binary output stream for notifications and the prompt
            (default ``sys.stdout.buffer``).
        start_pump: Launch the input pump thread once streaming.
    """

    def __init__(
        self,
        link: GattLink,
        config: BridgeConfig,
        *,
        source: Optional[BinaryIO] = None,
        sink: Optional[BinaryIO] = None,
        start_pump: bool = True,
    ) -> None:
        self.link = link
        self.config = config
        self._source = source
        self._sink = sink if sink is not None else sys.stdout.buffer
        self._start_pump = start_pump
        self._output_lock = threading.Lock()

        self.state = BridgeState.DISCONNECTED
        self.context: Optional[BridgeContext] = None
        self.router: Optional[NotificationRouter] = None
        self.pump: Optional[InputPump] = None
        self.cancel_reason: Optional[str] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._cancelled: Optional[asyncio.Event] = None
        self._shutdown_started = False

    # -- cancellation ------------------------------------------------------

    def _post_cancel(self, reason: str) -> None:
        if self.cancel_reason is None:
            self.cancel_reason = reason
            logger.info("Cancellation requested: %s", reason)
        if self._cancelled is not None:
            self._cancelled.set()

    def request_cancel(self, reason: str = "requested") -> None:
        """Ask the bridge to shut down. Safe from any thread, any number of times."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._post_cancel, reason)
        except RuntimeError:
            # Loop closed between the check and the call
            pass

    def _install_signal_handlers(self) -> Callable[[], None]:
        """Route SIGINT/SIGTERM to a cancellation request.

        Returns:
            A callable putting back the handlers that were in place before.
        """
        loop = self._loop
        assert loop is not None
        installed: list[signal.Signals] = []
        previous: dict[signal.Signals, object] = {}

        for sig in (signal.SIGINT, signal.SIGTERM):
            before = signal.getsignal(sig)
            try:
                loop.add_signal_handler(sig, self._post_cancel, sig.name)
                installed.append(sig)
            except NotImplementedError:
                # Windows event loops: fall back to a plain handler that only posts
                signal.signal(
                    sig, lambda signum, _frame: self.request_cancel(signal.Signals(signum).name)
                )
            except (RuntimeError, ValueError):
                logger.debug("Signal handler for %s not installed", sig.name)
                continue
            previous[sig] = before

        def restore() -> None:
            for sig in installed:
                # remove_signal_handler resets to the default, not the previous handler
                loop.remove_signal_handler(sig)
            for sig, handler in previous.items():
                if handler is not None:
                    signal.signal(sig, handler)  # type: ignore[arg-type]

        return restore

    # -- lifecycle ---------------------------------------------------------

    def _on_notification(self, uuid: UUID, payload: bytes) -> None:
        if self.router is not None:
            self.router.dispatch(uuid, payload)

    async def start(self) -> None:
        """Bring the bridge from DISCONNECTED to STREAMING.

        Raises:
            ConnectError, DiscoveryError, CharacteristicNotFound: Startup
                aborted. Any acquired connection has been released and no
                subscription is left active.
        """
        self._loop = asyncio.get_running_loop()
        if self._cancelled is None:
            self._cancelled = asyncio.Event()

        self.link.set_disconnect_handler(lambda: self.request_cancel("link lost"))
        await self.link.connect()
        connection = BridgeConnection(self.link, self._loop)
        self.context = BridgeContext(config=self.config, connection=connection)
        self.state = BridgeState.CONNECTED
        logger.info("Connected to %s", self.link.address)

        try:
            await self._setup_streams(self.context)
        except BaseException:
            await self._teardown()
            raise

        if self._start_pump:
            self.pump = InputPump(
                self.context,
                ChunkedWriter(self.config.mtu),
                source=self._source,
                output=self._sink,
                output_lock=self._output_lock,
            )
            self.pump.start()
        self.state = BridgeState.STREAMING
        logger.info("Bridge streaming: tx=%s", self.config.tx_uuid)

    async def _setup_streams(self, context: BridgeContext) -> None:
        resolver = CharacteristicResolver()
        required = self.config.required_uuids
        handles = await resolver.resolve(context.connection, required)
        require_handles(handles, required, resolver.invalid)
        context.handles.update(handles)

        self.router = NotificationRouter(context.connection, context.handles)
        for uuid in self.config.rx_uuids:
            self.router.register(uuid, LineRenderer(self._sink, self._output_lock))
        self.link.set_notification_handler(self._on_notification)

        for uuid in self.config.rx_uuids:
            try:
                await self.router.start(uuid)
            except SubscriptionError as e:
                logger.error("%s", e)

    async def wait_cancelled(self) -> None:
        """Block until a cancellation has been posted.

        Returns immediately if one was posted earlier. Must run on the loop
        that called ``start()`` or ``run()``.
        """
        assert self._cancelled is not None
        await self._cancelled.wait()

    async def shutdown(self) -> None:
        """Run the STREAMING -> SHUTTING_DOWN -> DISCONNECTED transition.

        Runs at most once; later calls return immediately. Teardown failures
        are logged as ``ShutdownError`` and never stop the sequence.
        """
        if self._shutdown_started:
            return
        self._shutdown_started = True
        if self.state is BridgeState.DISCONNECTED:
            return
        self.state = BridgeState.SHUTTING_DOWN
        logger.info("Shutting down bridge")
        await self._teardown()

    async def _teardown(self) -> None:
        context = self.context
        if context is not None:
            context.connection.begin_close()
        if self.router is not None:
            for uuid in self.router.active_uuids():
                try:
                    await self.router.stop(uuid)
                except SubscriptionError as e:
                    logger.error("%s", ShutdownError(str(e)))
        self.link.set_notification_handler(None)
        self.link.set_disconnect_handler(None)
        if context is not None:
            try:
                await context.connection.disconnect()
            except Exception as e:
                logger.error("%s", ShutdownError(f"Disconnect failed: {e}"))
        self.state = BridgeState.DISCONNECTED
        logger.info("Disconnected from %s", self.link.address)

    async def run(self) -> None:
        """Start, stream until cancelled, then shut down.

        SIGINT and SIGTERM are handled for the duration of the call and the
        previous handlers are restored on return.

        Raises:
            BridgeError: Startup failed. Teardown has already run.
        """
        self._loop = asyncio.get_running_loop()
        self._cancelled = asyncio.Event()
        restore = self._install_signal_handlers()
        try:
            await self.start()
            await self.wait_cancelled()
        finally:
            try:
                await self.shutdown()
            finally:
                restore()


def run_bridge(
    link: GattLink,
    config: BridgeConfig,
    *,
    source: Optional[BinaryIO] = None,
    sink: Optional[BinaryIO] = None,
) -> int:
    """Synchronous entry point returning a process exit code.

    Returns:
        0 after a cancellation that followed a successful start, 1 when
        startup failed.
    """
    controller = BridgeController(link, config, source=source, sink=sink)
    try:
        asyncio.run(controller.run())
    except BridgeError as e:
        logger.error("%s", e)
        return 1
    return 0
