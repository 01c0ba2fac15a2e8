"""Binance market-data stream client (robust) using asyncio + websockets.

One ``BinanceTickerStream`` per symbol:
- Raw stream ``<symbol>@ticker`` (last price ``c``, event time ``E``) or
  ``<symbol>@trade`` (price ``p``, trade time ``T``)
- Heartbeat (ping) task
- Stale-stream watchdog: no message for ``stale_after_sec`` forces a reconnect
- Reconnection with exponential backoff + jitter, forever until ``stop()``
"""

from __future__ import annotations

import asyncio
import json
import random
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

from binsettle.infrastructure.logging.logging import get_logger
from binsettle.infrastructure.utils.timeutils import from_epoch_ms, utc_now
from binsettle.models.market_models import Tick

JsonDict = Dict[str, Any]

TickCallback = Callable[[Tick], None]
StateCallback = Callable[[str, bool], None]


class BinanceWSError(RuntimeError):
    pass


def parse_stream_message(raw: Any, symbol: str, stream: str = "ticker") -> Optional[Tick]:
    """Turn one raw-stream payload into a Tick. Returns None for non-price frames."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    msg = json.loads(raw) if isinstance(raw, str) else raw
    if not isinstance(msg, dict):
        return None
    # combined-stream envelope {"stream": ..., "data": {...}}
    if "data" in msg and isinstance(msg["data"], dict):
        msg = msg["data"]

    if stream == "trade":
        price_key, ts_key = "p", "T"
    else:
        price_key, ts_key = "c", "E"

    price_raw = msg.get(price_key)
    if price_raw is None:
        return None
    try:
        price = Decimal(str(price_raw))
    except InvalidOperation:
        return None
    if price <= 0:
        return None

    ts_raw = msg.get(ts_key) or msg.get("E")
    timestamp = from_epoch_ms(int(ts_raw)) if ts_raw is not None else utc_now()
    return Tick(symbol=symbol.upper(), price=price, timestamp=timestamp)


class BinanceTickerStream:
    def __init__(
        self,
        symbol: str,
        on_tick: TickCallback,
        *,
        websocket_url: str = "wss://stream.binance.com:9443/ws",
        stream: str = "ticker",
        heartbeat_interval_sec: float = 20.0,
        stale_after_sec: float = 60.0,
        initial_reconnect_backoff_sec: float = 1.0,
        max_reconnect_backoff_sec: float = 60.0,
        on_state_change: Optional[StateCallback] = None,
    ) -> None:
        self.symbol = symbol.upper()
        self._logger = get_logger("binance_ws", symbol=self.symbol)
        self._stream = stream
        self._url = f"{websocket_url.rstrip('/')}/{self.symbol.lower()}@{stream}"
        self._on_tick = on_tick
        self._on_state_change = on_state_change
        self._heartbeat_interval = heartbeat_interval_sec
        self._stale_after = stale_after_sec
        self._initial_backoff = initial_reconnect_backoff_sec
        self._max_backoff = max_reconnect_backoff_sec

        self._ws: Optional[ClientConnection] = None
        self._connected_evt = asyncio.Event()
        self._stop_evt = asyncio.Event()

        self._runner_task: Optional[asyncio.Task[None]] = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None

        self.reconnect_count = 0

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_connected(self) -> bool:
        return self._connected_evt.is_set()

    async def start(self) -> None:
        if self._runner_task and not self._runner_task.done():
            return
        self._stop_evt.clear()
        self._runner_task = asyncio.create_task(self._run_forever(), name=f"binance-stream-{self.symbol}")

    async def stop(self) -> None:
        self._stop_evt.set()
        runner = self._runner_task
        self._runner_task = None
        if runner:
            runner.cancel()
            try:
                await runner
            except (asyncio.CancelledError, Exception):
                pass
        await self._disconnect()

    async def _run_forever(self) -> None:
        backoff = self._initial_backoff
        while not self._stop_evt.is_set():
            try:
                await self._connect_and_run()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error("ws_loop_error", error=str(e))
            finally:
                was_connected = self.is_connected
                await self._disconnect()

            if self._stop_evt.is_set():
                break

            if was_connected:
                # the last session got through the handshake: start over from the shortest wait
                backoff = self._initial_backoff

            self.reconnect_count += 1
            jitter = random.random() * 0.3 * backoff
            sleep_for = min(self._max_backoff, backoff + jitter)
            self._logger.warning("reconnect_backoff", seconds=round(sleep_for, 2), attempt=self.reconnect_count)
            await asyncio.sleep(sleep_for)
            backoff = min(self._max_backoff, backoff * 2)

    async def _connect_and_run(self) -> None:
        self._logger.info("ws_connect", url=self._url)

        async with websockets.connect(
            self._url,
            ping_interval=None,  # we manage ping manually
            close_timeout=5,
            max_queue=256,
        ) as ws:
            self._ws = ws
            self._set_connected(True)

            self._reader_task = asyncio.create_task(self._reader_loop())
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

            done, pending = await asyncio.wait(
                [self._reader_task, self._heartbeat_task],
                return_when=asyncio.FIRST_COMPLETED,
            )
            for t in pending:
                t.cancel()
            for t in done:
                exc = t.exception()
                if exc:
                    raise exc
            # reader returned cleanly: server closed the stream (Binance drops
            # connections every 24h), loop around and reconnect
            raise BinanceWSError("stream closed by server")

    def _set_connected(self, connected: bool) -> None:
        was = self._connected_evt.is_set()
        if connected:
            self._connected_evt.set()
        else:
            self._connected_evt.clear()
        if was != connected and self._on_state_change:
            try:
                self._on_state_change(self.symbol, connected)
            except Exception as e:
                self._logger.warning("state_callback_error", error=str(e))

    async def _disconnect(self) -> None:
        self._set_connected(False)

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

        if self._reader_task:
            self._reader_task.cancel()
            self._reader_task = None

        if self._ws:
            try:
                await self._ws.close()
            except Exception:
                pass
            self._ws = None

    async def _reader_loop(self) -> None:
        assert self._ws is not None
        try:
            while True:
                try:
                    raw = await asyncio.wait_for(self._ws.recv(), timeout=self._stale_after)
                except asyncio.TimeoutError as e:
                    raise BinanceWSError(f"no data for {self._stale_after}s") from e
                try:
                    tick = parse_stream_message(raw, self.symbol, self._stream)
                except (ValueError, TypeError) as e:
                    self._logger.warning("bad_message", error=str(e))
                    continue
                if tick is None:
                    continue
                try:
                    self._on_tick(tick)
                except Exception as e:
                    self._logger.error("tick_callback_error", error=str(e))
        except ConnectionClosed:
            return

    async def _heartbeat_loop(self) -> None:
        assert self._ws is not None
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                pong_waiter = await self._ws.ping()
                await asyncio.wait_for(pong_waiter, timeout=5.0)
                self._logger.debug("ws_ping_ok")
            except Exception as e:
                self._logger.warning("ws_ping_failed", error=str(e))
                raise
