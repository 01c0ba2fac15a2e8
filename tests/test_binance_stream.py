"""Connection lifecycle of BinanceTickerStream against a scripted websocket server."""

import asyncio
import json
from decimal import Decimal

import pytest
from structlog.testing import capture_logs
from websockets.exceptions import ConnectionClosedOK

from binsettle.infrastructure.binance import binance_ws_client
from binsettle.infrastructure.binance.binance_ws_client import BinanceTickerStream
from conftest import eventually


def ticker(price: str, event_ms: int = 1704110400000) -> str:
    return json.dumps({"e": "24hrTicker", "E": event_ms, "s": "BTCUSDT", "c": price})


class FakeConnection:
    """One websocket session: serves ``frames``, then closes cleanly or goes silent."""

    def __init__(self, frames=(), *, hang: bool = False, ping_error: Exception = None):
        self.frames = list(frames)
        self.hang = hang
        self.ping_error = ping_error
        self.closed = False

    async def recv(self):
        if self.frames:
            return self.frames.pop(0)
        if self.hang:
            await asyncio.Event().wait()
        raise ConnectionClosedOK(None, None)

    async def ping(self):
        if self.ping_error is not None:
            raise self.ping_error
        fut = asyncio.get_running_loop().create_future()
        fut.set_result(0.0)
        return fut

    async def close(self):
        self.closed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.close()


class FakeServer:
    """Hands out scripted sessions in order, then ``default()`` ones forever."""

    def __init__(self, sessions=(), default=None):
        self.sessions = list(sessions)
        self.default = default or (lambda: FakeConnection(hang=True))
        self.urls = []

    def connect(self, url, **kwargs):
        self.urls.append(url)
        if self.sessions:
            return self.sessions.pop(0)
        return self.default()


@pytest.fixture
def server(monkeypatch):
    s = FakeServer()
    monkeypatch.setattr(binance_ws_client.websockets, "connect", s.connect)
    return s


def make_stream(ticks, states, **overrides) -> BinanceTickerStream:
    kwargs = dict(
        heartbeat_interval_sec=30.0,
        stale_after_sec=30.0,
        initial_reconnect_backoff_sec=0.01,
        max_reconnect_backoff_sec=5.0,
        on_state_change=lambda symbol, connected: states.append((symbol, connected)),
    )
    kwargs.update(overrides)
    return BinanceTickerStream("btcusdt", ticks.append, **kwargs)


class TestConnection:
    async def test_ticks_are_delivered(self, server):
        """Frames are parsed and handed to the tick callback."""
        server.sessions = [FakeConnection([ticker("42000.50"), "not json", ticker("42001.00")], hang=True)]
        ticks, states = [], []
        stream = make_stream(ticks, states)
        await stream.start()
        try:
            await eventually(lambda: len(ticks) == 2)
        finally:
            await stream.stop()

        assert [t.price for t in ticks] == [Decimal("42000.50"), Decimal("42001.00")]
        assert server.urls == ["wss://stream.binance.com:9443/ws/btcusdt@ticker"]

    async def test_state_changes_on_connect_and_disconnect(self, server):
        server.sessions = [FakeConnection(hang=True)]
        ticks, states = [], []
        stream = make_stream(ticks, states)
        await stream.start()
        await eventually(lambda: stream.is_connected)
        await stream.stop()

        assert states == [("BTCUSDT", True), ("BTCUSDT", False)]
        assert not stream.is_connected

    async def test_reconnects_after_server_close(self, server):
        """A clean close from the server is followed by a new session."""
        first = FakeConnection([ticker("42000.50")])
        second = FakeConnection([ticker("42010.00")], hang=True)
        server.sessions = [first, second]
        ticks, states = [], []
        stream = make_stream(ticks, states)
        await stream.start()
        try:
            await eventually(lambda: len(ticks) == 2)
        finally:
            await stream.stop()

        assert first.closed
        assert stream.reconnect_count == 1
        assert len(server.urls) == 2
        assert states[:3] == [("BTCUSDT", True), ("BTCUSDT", False), ("BTCUSDT", True)]


class TestWatchdogs:
    async def test_silent_stream_forces_reconnect(self, server):
        silent = FakeConnection(hang=True)
        server.sessions = [silent, FakeConnection([ticker("42000.50")], hang=True)]
        ticks, states = [], []
        stream = make_stream(ticks, states, stale_after_sec=0.05)
        await stream.start()
        try:
            await eventually(lambda: len(ticks) == 1)
        finally:
            await stream.stop()

        assert silent.closed
        assert stream.reconnect_count >= 1
        assert ("BTCUSDT", False) in states

    async def test_failed_ping_forces_reconnect(self, server):
        dead = FakeConnection(hang=True, ping_error=OSError("pong timeout"))
        server.sessions = [dead]
        ticks, states = [], []
        stream = make_stream(ticks, states, heartbeat_interval_sec=0.02)
        await stream.start()
        try:
            await eventually(lambda: len(server.urls) >= 2)
        finally:
            await stream.stop()

        assert dead.closed
        assert stream.reconnect_count >= 1


class TestReconnectBackoff:
    async def test_backoff_resets_after_each_working_session(self, server, monkeypatch):
        """Sessions that connected before dropping never push the wait past the initial delay."""
        monkeypatch.setattr(binance_ws_client.random, "random", lambda: 0.0)
        server.default = lambda: FakeConnection()
        ticks, states = [], []

        with capture_logs() as logs:
            stream = make_stream(ticks, states)
            await stream.start()
            try:
                await eventually(lambda: stream.reconnect_count >= 6)
            finally:
                await stream.stop()

        waits = [e["seconds"] for e in logs if e["event"] == "reconnect_backoff"]
        assert len(waits) >= 6
        assert set(waits) == {0.01}

    async def test_backoff_grows_while_connect_fails(self, server, monkeypatch):
        monkeypatch.setattr(binance_ws_client.random, "random", lambda: 0.0)

        def refuse(url, **kwargs):
            server.urls.append(url)
            raise OSError("connection refused")

        monkeypatch.setattr(binance_ws_client.websockets, "connect", refuse)
        ticks, states = [], []

        with capture_logs() as logs:
            stream = make_stream(ticks, states, max_reconnect_backoff_sec=0.04)
            await stream.start()
            try:
                await eventually(lambda: stream.reconnect_count >= 4)
            finally:
                await stream.stop()

        waits = [e["seconds"] for e in logs if e["event"] == "reconnect_backoff"]
        assert waits[:4] == [0.01, 0.02, 0.04, 0.04]
        assert states == []
