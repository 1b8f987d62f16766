"""Tests for remote_terminal.pty.bridge (control frames, relay, exit trailer)."""

from __future__ import annotations

import asyncio

import pytest

from remote_terminal.pty.bridge import (
    IOBridge,
    ResizeFrame,
    exit_trailer,
    parse_control_frame,
)


class FakeSession:
    """Stands in for PTYSession; records what the bridge does to it."""

    def __init__(self) -> None:
        self.id = 1
        self.written: list[bytes] = []
        self.resizes: list[tuple[int, int]] = []
        self.on_data = None
        self.on_exit = None
        self.running = True

    def set_on_data(self, callback) -> None:
        self.on_data = callback

    def set_on_exit(self, callback) -> None:
        self.on_exit = callback

    def write(self, data: bytes) -> None:
        if not self.running:
            raise OSError("not running")
        self.written.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.resizes.append((cols, rows))


class FakeChannel:
    def __init__(self) -> None:
        self.open = True
        self.sent: list[bytes] = []
        self.inbound: asyncio.Queue[str | bytes | None] = asyncio.Queue()
        self.close_calls = 0
        self.fail_sends = False

    @property
    def is_open(self) -> bool:
        return self.open

    async def send(self, data: bytes) -> None:
        if self.fail_sends:
            raise ConnectionResetError("peer gone")
        self.sent.append(data)

    async def receive(self) -> str | bytes | None:
        return await self.inbound.get()

    async def close(self) -> None:
        self.close_calls += 1
        self.open = False


class CloseCounter:
    def __init__(self) -> None:
        self.calls = 0
        self.closed = asyncio.Event()

    async def __call__(self) -> None:
        self.calls += 1
        self.closed.set()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def on_close() -> CloseCounter:
    return CloseCounter()


@pytest.fixture
def bridge(session: FakeSession, channel: FakeChannel, on_close: CloseCounter) -> IOBridge:
    return IOBridge(session, channel, on_close=on_close)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# parse_control_frame
# ---------------------------------------------------------------------------


class TestParseControlFrame:
    def test_resize(self) -> None:
        frame = parse_control_frame('{"type": "resize", "cols": 100, "rows": 40}')
        assert frame == ResizeFrame(cols=100, rows=40)

    def test_resize_bytes(self) -> None:
        frame = parse_control_frame(b'{"type":"resize","cols":120,"rows":30}')
        assert frame == ResizeFrame(cols=120, rows=30)

    def test_float_dimensions_truncate(self) -> None:
        frame = parse_control_frame('{"type": "resize", "cols": 100.0, "rows": 40.7}')
        assert frame == ResizeFrame(cols=100, rows=40)

    @pytest.mark.parametrize(
        "payload",
        [
            "ls\n",
            "",
            "42",
            "[1, 2]",
            '"resize"',
            '{"type": "input", "cols": 10, "rows": 10}',
            '{"cols": 10, "rows": 10}',
            '{"type": "resize", "cols": 10}',
            '{"type": "resize", "cols": 0, "rows": 10}',
            '{"type": "resize", "cols": -5, "rows": 10}',
            '{"type": "resize", "cols": "80", "rows": "24"}',
            '{"type": "resize", "cols": true, "rows": 24}',
            '{"type": "resize", "cols": NaN, "rows": 24}',
            '{"type": "resize", "cols": 70000, "rows": 24}',
            b"\xff\xfe\x00",
        ],
    )
    def test_not_a_control_frame(self, payload: str | bytes) -> None:
        assert parse_control_frame(payload) is None


# ---------------------------------------------------------------------------
# exit_trailer
# ---------------------------------------------------------------------------


class TestExitTrailer:
    def test_exit_code(self) -> None:
        assert exit_trailer(0, None) == b"\r\n\x1b[31m[Process exited with code 0]\x1b[0m\r\n"

    def test_signal(self) -> None:
        assert exit_trailer(None, 9) == (
            b"\r\n\x1b[31m[Process exited with signal SIGKILL]\x1b[0m\r\n"
        )

    def test_unknown(self) -> None:
        assert exit_trailer(None, None) == b"\r\n\x1b[31m[Process exited]\x1b[0m\r\n"


# ---------------------------------------------------------------------------
# Channel → process
# ---------------------------------------------------------------------------


class TestInput:
    def test_resize_is_consumed(self, bridge: IOBridge, session: FakeSession) -> None:
        bridge.handle_input('{"type": "resize", "cols": 100, "rows": 40}')
        assert session.resizes == [(100, 40)]
        assert session.written == []

    def test_plain_text_written(self, bridge: IOBridge, session: FakeSession) -> None:
        bridge.handle_input("ls\n")
        assert session.written == [b"ls\n"]
        assert session.resizes == []

    def test_other_json_written_unchanged(
        self, bridge: IOBridge, session: FakeSession
    ) -> None:
        payload = '{"type": "input", "data": "x"}'
        bridge.handle_input(payload)
        assert session.written == [payload.encode()]

    def test_undecodable_bytes_written(self, bridge: IOBridge, session: FakeSession) -> None:
        bridge.handle_input(b"\xff\xfe")
        assert session.written == [b"\xff\xfe"]

    def test_write_after_exit_dropped(self, bridge: IOBridge, session: FakeSession) -> None:
        session.running = False
        bridge.handle_input("ls\n")
        assert session.written == []

    async def test_arrival_order(
        self, bridge: IOBridge, session: FakeSession, channel: FakeChannel
    ) -> None:
        bridge.start()
        for payload in ["a", '{"type":"resize","cols":90,"rows":30}', "b", "c"]:
            channel.inbound.put_nowait(payload)
        await asyncio.sleep(0.05)
        assert session.written == [b"a", b"b", b"c"]
        assert session.resizes == [(90, 30)]
        bridge.stop()


# ---------------------------------------------------------------------------
# Process → channel
# ---------------------------------------------------------------------------


class TestOutput:
    async def test_forwarded_verbatim(self, bridge: IOBridge, channel: FakeChannel) -> None:
        await bridge.forward_output(b"\x1b[1mhi\x1b[0m")
        await bridge.forward_output(b" there")
        assert channel.sent == [b"\x1b[1mhi\x1b[0m", b" there"]

    async def test_dropped_when_closed(self, bridge: IOBridge, channel: FakeChannel) -> None:
        channel.open = False
        await bridge.forward_output(b"lost")
        assert channel.sent == []

    async def test_send_failure_swallowed(
        self, bridge: IOBridge, channel: FakeChannel
    ) -> None:
        channel.fail_sends = True
        await bridge.forward_output(b"lost")
        assert channel.sent == []


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_channel_close_ends_session(
        self,
        bridge: IOBridge,
        channel: FakeChannel,
        on_close: CloseCounter,
    ) -> None:
        bridge.start()
        channel.inbound.put_nowait(None)
        await asyncio.wait_for(on_close.closed.wait(), timeout=1.0)
        assert on_close.calls == 1

    async def test_process_exit_sends_trailer_and_closes(
        self,
        bridge: IOBridge,
        session: FakeSession,
        channel: FakeChannel,
        on_close: CloseCounter,
    ) -> None:
        bridge.start()
        await session.on_exit(session, 0, None)
        assert channel.sent == [exit_trailer(0, None)]
        assert channel.close_calls == 1
        assert on_close.calls == 1
        bridge.stop()

    async def test_on_close_runs_once(
        self,
        bridge: IOBridge,
        session: FakeSession,
        channel: FakeChannel,
        on_close: CloseCounter,
    ) -> None:
        bridge.start()
        channel.inbound.put_nowait(None)
        await asyncio.wait_for(on_close.closed.wait(), timeout=1.0)
        channel.open = False
        await session.on_exit(session, 1, None)
        assert on_close.calls == 1
        assert channel.sent == []

    async def test_no_trailer_when_channel_closed(
        self,
        bridge: IOBridge,
        session: FakeSession,
        channel: FakeChannel,
        on_close: CloseCounter,
    ) -> None:
        bridge.start()
        channel.open = False
        await session.on_exit(session, None, 15)
        assert channel.sent == []
        assert on_close.calls == 1
        bridge.stop()
