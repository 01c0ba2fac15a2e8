"""Price feed adapter: one live stream per actively-traded symbol.

Many order resolutions wait on the same subscription. Ticks are fanned out
without awaiting anybody:
- ``get_price_at`` / ``get_snapshot_price`` waiters are plain futures that get
  ``set_result`` on the matching tick;
- ``listen`` queues are bounded and drop their oldest tick when full, so a
  stalled consumer never holds up the stream or the other consumers.

Symbols here are feed identifiers (``BTCUSDT``), not symbol ids.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Set, Tuple

from binsettle.infrastructure.binance.binance_ws_client import BinanceTickerStream, StateCallback, TickCallback
from binsettle.infrastructure.logging.logging import get_logger
from binsettle.infrastructure.utils.config import SettlementServiceConfig
from binsettle.infrastructure.utils.timeutils import to_iso, utc_now
from binsettle.models.market_models import Tick
from binsettle.services.settlement.errors import FeedUnavailable


class PriceStream(Protocol):
    @property
    def is_connected(self) -> bool: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


StreamFactory = Callable[[str, TickCallback, StateCallback], PriceStream]


@dataclass
class _SymbolFeed:
    stream: PriceStream
    history: Deque[Tick]
    next_tick_waiters: List["asyncio.Future[Tick]"] = field(default_factory=list)
    at_waiters: List[Tuple[datetime, "asyncio.Future[Tick]"]] = field(default_factory=list)
    listeners: Set["asyncio.Queue[Tick]"] = field(default_factory=set)
    refcount: int = 0
    idle_task: Optional["asyncio.Task[None]"] = None
    dropped_ticks: int = 0


class PriceFeedAdapter:
    def __init__(
        self,
        stream_factory: StreamFactory,
        *,
        snapshot_wait_timeout_sec: float = 5.0,
        snapshot_max_age_sec: float = 10.0,
        price_wait_timeout_sec: float = 15.0,
        history_size: int = 512,
        listener_queue_size: int = 256,
        idle_unsubscribe_sec: float = 300.0,
        on_state_change: Optional[StateCallback] = None,
    ) -> None:
        self._log = get_logger("price_feed")
        self._factory = stream_factory
        self._snapshot_wait = snapshot_wait_timeout_sec
        self._snapshot_max_age = snapshot_max_age_sec
        self._price_wait = price_wait_timeout_sec
        self._history_size = history_size
        self._listener_queue_size = listener_queue_size
        self._idle_unsubscribe = idle_unsubscribe_sec
        self._on_state_change = on_state_change
        self._feeds: Dict[str, _SymbolFeed] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        config: SettlementServiceConfig,
        *,
        on_state_change: Optional[StateCallback] = None,
    ) -> "PriceFeedAdapter":
        def factory(symbol: str, on_tick: TickCallback, on_state: StateCallback) -> PriceStream:
            return BinanceTickerStream(
                symbol,
                on_tick,
                websocket_url=config.binance.websocket_url,
                stream=config.binance.stream,
                heartbeat_interval_sec=config.feed.heartbeat_interval_sec,
                stale_after_sec=config.feed.stale_after_sec,
                initial_reconnect_backoff_sec=config.feed.initial_reconnect_backoff_sec,
                max_reconnect_backoff_sec=config.feed.max_reconnect_backoff_sec,
                on_state_change=on_state,
            )

        return cls(
            factory,
            snapshot_wait_timeout_sec=config.feed.snapshot_wait_timeout_sec,
            snapshot_max_age_sec=config.feed.snapshot_max_age_sec,
            price_wait_timeout_sec=config.feed.price_wait_timeout_sec,
            history_size=config.feed.history_size,
            listener_queue_size=config.feed.listener_queue_size,
            idle_unsubscribe_sec=config.feed.idle_unsubscribe_sec,
            on_state_change=on_state_change,
        )

    # ------------------------------------------------------------------ subscriptions

    async def _ensure_feed(self, symbol: str) -> _SymbolFeed:
        symbol = symbol.upper()
        async with self._lock:
            feed = self._feeds.get(symbol)
            if feed is None:
                stream = self._factory(
                    symbol,
                    lambda tick, s=symbol: self._on_tick(s, tick),
                    self._handle_state_change,
                )
                feed = _SymbolFeed(stream=stream, history=deque(maxlen=self._history_size))
                self._feeds[symbol] = feed
                await stream.start()
                self._log.info("feed_subscribed", symbol=symbol)
            return feed

    async def acquire(self, symbol: str) -> None:
        """Mark a symbol as actively traded (keeps its stream alive)."""
        feed = await self._ensure_feed(symbol)
        feed.refcount += 1
        if feed.idle_task is not None:
            feed.idle_task.cancel()
            feed.idle_task = None

    def release(self, symbol: str) -> None:
        feed = self._feeds.get(symbol.upper())
        if feed is None:
            return
        feed.refcount = max(0, feed.refcount - 1)
        self._maybe_schedule_idle_stop(symbol.upper(), feed)

    def _maybe_schedule_idle_stop(self, symbol: str, feed: _SymbolFeed) -> None:
        if feed.refcount > 0 or feed.listeners or feed.at_waiters or feed.next_tick_waiters:
            return
        if feed.idle_task is not None and not feed.idle_task.done():
            return
        feed.idle_task = asyncio.create_task(self._idle_stop(symbol))

    async def _idle_stop(self, symbol: str) -> None:
        await asyncio.sleep(self._idle_unsubscribe)
        async with self._lock:
            feed = self._feeds.get(symbol)
            if feed is None or feed.refcount > 0 or feed.listeners or feed.at_waiters or feed.next_tick_waiters:
                return
            del self._feeds[symbol]
        await feed.stream.stop()
        self._log.info("feed_unsubscribed_idle", symbol=symbol)

    def _handle_state_change(self, symbol: str, connected: bool) -> None:
        if connected:
            self._log.info("feed_connected", symbol=symbol)
        else:
            self._log.warning("feed_disconnected", symbol=symbol)
        if self._on_state_change:
            self._on_state_change(symbol, connected)

    # ------------------------------------------------------------------ tick fan-out

    def _on_tick(self, symbol: str, tick: Tick) -> None:
        feed = self._feeds.get(symbol)
        if feed is None:
            return
        feed.history.append(tick)

        waiters, feed.next_tick_waiters = feed.next_tick_waiters, []
        for fut in waiters:
            if not fut.done():
                fut.set_result(tick)

        remaining: List[Tuple[datetime, "asyncio.Future[Tick]"]] = []
        for not_before, fut in feed.at_waiters:
            if fut.done():
                continue
            if tick.timestamp >= not_before:
                fut.set_result(tick)
            else:
                remaining.append((not_before, fut))
        feed.at_waiters = remaining

        for q in feed.listeners:
            if q.full():
                try:
                    q.get_nowait()
                    feed.dropped_ticks += 1
                except asyncio.QueueEmpty:
                    pass
            q.put_nowait(tick)

    # ------------------------------------------------------------------ queries

    def latest(self, symbol: str) -> Optional[Tick]:
        feed = self._feeds.get(symbol.upper())
        if feed is None or not feed.history:
            return None
        return feed.history[-1]

    async def get_snapshot_price(self, symbol: str, timeout: Optional[float] = None) -> Decimal:
        """Current market price: the latest tick if fresh, else the next tick within the bound."""
        symbol = symbol.upper()
        feed = await self._ensure_feed(symbol)
        if feed.history:
            last = feed.history[-1]
            age = (utc_now() - last.timestamp).total_seconds()
            if age <= self._snapshot_max_age:
                return last.price

        fut: "asyncio.Future[Tick]" = asyncio.get_running_loop().create_future()
        feed.next_tick_waiters.append(fut)
        wait = self._snapshot_wait if timeout is None else timeout
        try:
            tick = await asyncio.wait_for(fut, timeout=wait)
        except asyncio.TimeoutError as e:
            raise FeedUnavailable(f"no {symbol} price within {wait}s") from e
        finally:
            if fut in feed.next_tick_waiters:
                feed.next_tick_waiters.remove(fut)
            self._maybe_schedule_idle_stop(symbol, feed)
        return tick.price

    async def get_price_at(self, symbol: str, not_before: datetime, timeout: Optional[float] = None) -> Tick:
        """First tick with timestamp >= ``not_before``; waits up to ``timeout`` seconds for it."""
        symbol = symbol.upper()
        feed = await self._ensure_feed(symbol)
        for tick in feed.history:
            if tick.timestamp >= not_before:
                return tick

        fut: "asyncio.Future[Tick]" = asyncio.get_running_loop().create_future()
        entry = (not_before, fut)
        feed.at_waiters.append(entry)
        wait = self._price_wait if timeout is None else timeout
        try:
            return await asyncio.wait_for(fut, timeout=wait)
        except asyncio.TimeoutError as e:
            raise FeedUnavailable(
                f"no {symbol} tick at or after {to_iso(not_before)} within {wait}s"
                f" (connected={feed.stream.is_connected})"
            ) from e
        finally:
            if entry in feed.at_waiters:
                feed.at_waiters.remove(entry)
            self._maybe_schedule_idle_stop(symbol, feed)

    async def listen(self, symbol: str) -> "asyncio.Queue[Tick]":
        """Push notifications: a bounded queue receiving every subsequent tick."""
        symbol = symbol.upper()
        feed = await self._ensure_feed(symbol)
        q: "asyncio.Queue[Tick]" = asyncio.Queue(maxsize=self._listener_queue_size)
        feed.listeners.add(q)
        if feed.idle_task is not None:
            feed.idle_task.cancel()
            feed.idle_task = None
        return q

    def unlisten(self, symbol: str, queue: "asyncio.Queue[Tick]") -> None:
        symbol = symbol.upper()
        feed = self._feeds.get(symbol)
        if feed is None:
            return
        feed.listeners.discard(queue)
        self._maybe_schedule_idle_stop(symbol, feed)

    def is_connected(self, symbol: str) -> bool:
        feed = self._feeds.get(symbol.upper())
        return bool(feed and feed.stream.is_connected)

    def stats(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for symbol, feed in self._feeds.items():
            last = feed.history[-1] if feed.history else None
            out[symbol] = {
                "connected": feed.stream.is_connected,
                "refcount": feed.refcount,
                "listeners": len(feed.listeners),
                "waiters": len(feed.at_waiters) + len(feed.next_tick_waiters),
                "last_price": str(last.price) if last else None,
                "last_tick_at": to_iso(last.timestamp) if last else None,
                "dropped_ticks": feed.dropped_ticks,
            }
        return out

    async def close(self) -> None:
        async with self._lock:
            feeds, self._feeds = self._feeds, {}
        for symbol, feed in feeds.items():
            if feed.idle_task is not None:
                feed.idle_task.cancel()
            for fut in feed.next_tick_waiters:
                if not fut.done():
                    fut.set_exception(FeedUnavailable("price feed closed"))
            for _, fut in feed.at_waiters:
                if not fut.done():
                    fut.set_exception(FeedUnavailable("price feed closed"))
            await feed.stream.stop()
            self._log.info("feed_closed", symbol=symbol)
