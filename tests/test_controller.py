from __future__ import annotations

import asyncio
import io
import os
import signal
import subprocess
import sys
from pathlib import Path
from uuid import UUID

import pytest

from ble_uart_bridge.config import BridgeConfig
from ble_uart_bridge.connection import LinkState
from ble_uart_bridge.controller import BridgeController, BridgeState, run_bridge
from ble_uart_bridge.errors import CharacteristicNotFound, ConnectError, DiscoveryError
from ble_uart_bridge.pump import PROMPT, PumpExit
from ble_uart_bridge.transport import Characteristic

from conftest import NX, NX_HANDLE, RX, RX_HANDLE, TX, TX_HANDLE, FakeLink

A = UUID("0000aaaa-0000-1000-8000-00805f9b34fb")
B = UUID("0000bbbb-0000-1000-8000-00805f9b34fb")


def _two_stream_config() -> BridgeConfig:
    return BridgeConfig(tx_uuid=TX, rx_uuids=(RX, NX), required_uuids=())


def _two_stream_link(**kwargs) -> FakeLink:
    return FakeLink(
        [
            Characteristic(TX, TX_HANDLE),
            Characteristic(RX, RX_HANDLE),
            Characteristic(NX, NX_HANDLE),
        ],
        **kwargs,
    )


def test_end_to_end_chunked_send_and_rendered_notification() -> None:
    link = FakeLink([Characteristic(A, 0x0020), Characteristic(B, 0x0022)])
    config = BridgeConfig(tx_uuid=A, rx_uuids=(B,), required_uuids=())
    source = io.BytesIO(b"m" * 44 + b"\n")
    sink = io.BytesIO()
    controller = BridgeController(link, config, source=source, sink=sink)

    async def scenario() -> None:
        await controller.start()
        assert controller.state is BridgeState.STREAMING
        assert controller.context is not None
        assert controller.context.handles == {A: 0x0020, B: 0x0022}

        assert controller.pump is not None
        await asyncio.to_thread(controller.pump.join, 5.0)
        link.notify(B, b"OK\r")

        controller.request_cancel()
        await controller.wait_cancelled()
        await controller.shutdown()

    asyncio.run(scenario())

    assert [len(w) for w in link.writes] == [20, 20, 5]
    assert {c[1] for c in link.calls_named("write")} == {0x0020}
    assert controller.pump.exit_reason is PumpExit.EOF
    assert sink.getvalue().endswith(b"OK\n")
    assert controller.state is BridgeState.DISCONNECTED


def test_cancel_stops_each_active_stream_once_then_disconnects_once() -> None:
    link = _two_stream_link()
    controller = BridgeController(link, _two_stream_config(), start_pump=False)

    async def scenario() -> None:
        await controller.start()
        controller.request_cancel("SIGINT")
        controller.request_cancel("SIGINT")
        await controller.wait_cancelled()
        await controller.shutdown()
        stops = len(link.calls_named("stop_notify"))
        disconnects = len(link.calls_named("disconnect"))

        controller.request_cancel("again")
        await asyncio.sleep(0)
        await controller.shutdown()
        assert len(link.calls_named("stop_notify")) == stops
        assert len(link.calls_named("disconnect")) == disconnects

    asyncio.run(scenario())

    teardown = [c for c in link.calls if c[0] in ("stop_notify", "disconnect")]
    assert sorted(teardown[:2]) == [("stop_notify", RX_HANDLE), ("stop_notify", NX_HANDLE)]
    assert teardown[2:] == [("disconnect",)]
    assert controller.cancel_reason == "SIGINT"


def test_missing_required_characteristic_aborts_before_any_activity() -> None:
    link = FakeLink([Characteristic(TX, TX_HANDLE)])
    controller = BridgeController(link, BridgeConfig.from_profile("nus"), start_pump=False)

    with pytest.raises(CharacteristicNotFound) as excinfo:
        asyncio.run(controller.start())

    assert excinfo.value.uuid == RX
    assert link.calls_named("start_notify") == []
    assert link.calls_named("write") == []
    assert link.calls_named("disconnect") == [("disconnect",)]
    assert controller.state is BridgeState.DISCONNECTED
    assert controller.pump is None


def test_connect_failure_keeps_disconnected() -> None:
    link = FakeLink(fail_connect=True)
    controller = BridgeController(link, BridgeConfig.from_profile("nus"))

    with pytest.raises(ConnectError):
        asyncio.run(controller.start())

    assert link.calls == [("connect",)]
    assert controller.state is BridgeState.DISCONNECTED


def test_discovery_failure_releases_connection() -> None:
    link = FakeLink(fail_discover=True)
    controller = BridgeController(link, BridgeConfig.from_profile("nus"))

    with pytest.raises(DiscoveryError):
        asyncio.run(controller.start())

    assert link.calls == [("connect",), ("discover",), ("disconnect",)]


def test_failed_optional_stream_is_soft() -> None:
    link = _two_stream_link(fail_start=(NX,))
    controller = BridgeController(link, _two_stream_config(), start_pump=False)

    async def scenario() -> None:
        await controller.start()
        assert controller.state is BridgeState.STREAMING
        assert controller.router is not None
        assert controller.router.active_uuids() == [RX]
        await controller.shutdown()

    asyncio.run(scenario())

    assert link.calls_named("stop_notify") == [("stop_notify", RX_HANDLE)]
    assert link.calls_named("disconnect") == [("disconnect",)]


def test_stop_failure_during_shutdown_still_disconnects() -> None:
    link = _two_stream_link(fail_stop=(RX_HANDLE,))
    controller = BridgeController(link, _two_stream_config(), start_pump=False)

    async def scenario() -> None:
        await controller.start()
        await controller.shutdown()

    asyncio.run(scenario())

    assert len(link.calls_named("stop_notify")) == 2
    assert link.calls_named("disconnect") == [("disconnect",)]
    assert controller.router is not None
    assert controller.router.active_uuids() == []


def test_connection_is_closed_after_shutdown() -> None:
    link = _two_stream_link()
    controller = BridgeController(link, _two_stream_config(), start_pump=False)

    async def scenario() -> None:
        await controller.start()
        await controller.shutdown()

    asyncio.run(scenario())

    assert controller.context is not None
    assert controller.context.connection.state is LinkState.CLOSED


def test_link_loss_triggers_shutdown() -> None:
    link = _two_stream_link()
    controller = BridgeController(link, _two_stream_config(), start_pump=False)

    async def scenario() -> None:
        task = asyncio.ensure_future(controller.run())
        while controller.state is not BridgeState.STREAMING:
            await asyncio.sleep(0.01)
        link.drop()
        await asyncio.wait_for(task, 5.0)

    asyncio.run(scenario())

    assert controller.cancel_reason == "link lost"
    assert link.calls_named("disconnect") == [("disconnect",)]
    assert controller.state is BridgeState.DISCONNECTED


def test_run_bridge_returns_one_on_fatal_startup_error() -> None:
    link = FakeLink([])

    assert run_bridge(link, BridgeConfig.from_profile("nus"), source=io.BytesIO(), sink=io.BytesIO()) == 1
    assert link.calls_named("disconnect") == [("disconnect",)]


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_repeated_sigint_tears_down_once_and_restores_handlers() -> None:
    link = _two_stream_link()
    controller = BridgeController(link, _two_stream_config(), start_pump=False)
    before = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}

    async def scenario() -> None:
        task = asyncio.ensure_future(controller.run())
        while controller.state is not BridgeState.STREAMING:
            await asyncio.sleep(0.01)
        os.kill(os.getpid(), signal.SIGINT)
        os.kill(os.getpid(), signal.SIGINT)
        await asyncio.wait_for(task, 5.0)

    asyncio.run(scenario())

    assert controller.cancel_reason == "SIGINT"
    assert sorted(link.calls_named("stop_notify")) == [
        ("stop_notify", RX_HANDLE),
        ("stop_notify", NX_HANDLE),
    ]
    assert link.calls_named("disconnect") == [("disconnect",)]
    assert controller.state is BridgeState.DISCONNECTED
    assert {sig: signal.getsignal(sig) for sig in before} == before


_CONSOLE_SESSION = """\
import sys
sys.path[:0] = [{tests!r}, {src!r}]

from conftest import RX, RX_HANDLE, TX, TX_HANDLE, FakeLink
from ble_uart_bridge.config import BridgeConfig
from ble_uart_bridge.controller import run_bridge
from ble_uart_bridge.transport import Characteristic

link = FakeLink([Characteristic(TX, TX_HANDLE), Characteristic(RX, RX_HANDLE)])
code = run_bridge(link, BridgeConfig.from_profile("nus"))
print("CALLS", " ".join(c[0] for c in link.calls), file=sys.stderr)
sys.exit(code)
"""


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_sigint_while_console_is_open_exits_zero(tmp_path: Path) -> None:
    tests_dir = Path(__file__).resolve().parent
    script = tmp_path / "session.py"
    script.write_text(
        _CONSOLE_SESSION.format(tests=str(tests_dir), src=str(tests_dir.parent / "src"))
    )

    # Interpreter shutdown with the input thread mid-read used to abort only
    # intermittently, so run several sessions
    for _ in range(3):
        with subprocess.Popen(
            [sys.executable, str(script)],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        ) as proc:
            assert proc.stdout is not None and proc.stderr is not None
            assert proc.stdout.readline() == PROMPT
            proc.send_signal(signal.SIGINT)
            try:
                returncode = proc.wait(timeout=10)
            except subprocess.TimeoutExpired:
                proc.kill()
                raise
            stderr = proc.stderr.read().decode(errors="replace")

        assert returncode == 0, stderr
        assert "CALLS connect discover start_notify stop_notify disconnect" in stderr
