"""Blocking console input loop feeding the transmit characteristic."""

from __future__ import annotations

import enum
import logging
import sys
import threading
from typing import BinaryIO, Optional

from .config import LineOverflow
from .context import BridgeContext
from .errors import LinkClosedError, WriteError
from .writer import ChunkedWriter

logger = logging.getLogger(__name__)

PROMPT = b"type something, then [enter] to send.\n"
NUL = b"\x00"


def console_input() -> BinaryIO:
    """Return the unbuffered stdin stream the pump reads by default.

    Note:
        The pump is a daemon thread that is still blocked in ``readline`` when
        the process exits. Reading through ``sys.stdin.buffer`` would leave its
        ``BufferedReader`` lock held at interpreter shutdown, which CPython
        turns into a fatal abort. The raw stream has no such lock.
    """
    buffer = sys.stdin.buffer
    return getattr(buffer, "raw", buffer)


class PumpExit(enum.Enum):
    EOF = "eof"
    READ_FAILED = "read-failed"
    WRITE_FAILED = "write-failed"
    LINK_CLOSED = "link-closed"


class InputPump(threading.Thread):
    """Read lines from a local source and send each one to the peripheral.

    Runs on its own daemon thread so a blocked ``readline`` never stalls the
    event loop. The loop ends for good at end of input or on the first write
    failure. Once the link is broken, further input is not read.

    Lines are read ``config.max_line`` bytes at a time, terminator included.
    A longer line is handled per ``config.line_overflow``:

    - ``split``: every piece is sent as its own message.
    - ``drop``: the whole line, up to its terminator, is discarded.
    """

    def __init__(
        self,
        context: BridgeContext,
        writer: ChunkedWriter,
        source: Optional[BinaryIO] = None,
        output: Optional[BinaryIO] = None,
        output_lock: Optional[threading.Lock] = None,
    ) -> None:
        super().__init__(name="ble-uart-input", daemon=True)
        self._context = context
        self._writer = writer
        self._source = source if source is not None else console_input()
        self._output = output
        self._output_lock = output_lock if output_lock is not None else threading.Lock()
        self.exit_reason: Optional[PumpExit] = None
        self.lines_sent = 0

    def _prompt(self) -> None:
        if self._output is None:
            return
        with self._output_lock:
            self._output.write(PROMPT)
            self._output.flush()

    def _is_overlong(self, line: bytes) -> bool:
        return len(line) >= self._context.config.max_line and not line.endswith(b"\n")

    def _discard_rest_of_line(self) -> bool:
        """Skip to the end of the current line. Returns False on end of input."""
        max_line = self._context.config.max_line
        while True:
            chunk = self._source.readline(max_line)
            if not chunk:
                return False
            if chunk.endswith(b"\n"):
                return True

    def read_line(self) -> Optional[bytes]:
        """Return the next message to send, or None at end of input."""
        config = self._context.config
        while True:
            line = self._source.readline(config.max_line)
            if not line:
                return None
            if config.line_overflow is LineOverflow.DROP and self._is_overlong(line):
                logger.warning(
                    "Input line longer than %d bytes discarded", config.max_line
                )
                if not self._discard_rest_of_line():
                    return None
                continue
            return line

    def run(self) -> None:
        """Prompt once, then forward lines until input ends or sending fails.

        Never raises. The reason the loop ended is left in ``exit_reason``.
        """
        config = self._context.config
        connection = self._context.connection
        tx_handle = self._context.tx_handle
        self._prompt()

        while True:
            try:
                line = self.read_line()
            except OSError as e:
                logger.error("Fail to read input: %s", e)
                self.exit_reason = PumpExit.READ_FAILED
                return
            if line is None:
                logger.info("Input closed; input pump stopping")
                self.exit_reason = PumpExit.EOF
                return
            if config.nul_terminate:
                line += NUL
            try:
                self._writer.send(connection, tx_handle, line)
            except WriteError as e:
                if isinstance(e.__cause__, LinkClosedError):
                    logger.info("Connection closed; input pump stopping")
                    self.exit_reason = PumpExit.LINK_CLOSED
                else:
                    logger.error(
                        "Fail to send data to TX characteristic %s: %s",
                        config.tx_uuid,
                        e,
                    )
                    self.exit_reason = PumpExit.WRITE_FAILED
                return
            self.lines_sent += 1
