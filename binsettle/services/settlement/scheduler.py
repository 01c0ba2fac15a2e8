"""Resolution scheduler.

In-memory timers fire each order at its expiry; a periodic sweep over
``find_due_pending`` catches whatever the timers missed (process restart,
order opened by another process, a timer task that died). Both paths funnel
into :meth:`ResolutionScheduler._dispatch`, which runs at most one resolution
per order id in this process, and the durable claim lease extends that
exclusion across processes.

A resolution that hits a transient error is retried in place with exponential
backoff until it succeeds or the scheduler stops; if the process dies instead,
the order is still PENDING and the next sweep (here or elsewhere, once the
lease has expired) picks it up again.
"""

from __future__ import annotations

import asyncio
import os
import socket
import uuid
from datetime import datetime
from typing import Callable, Dict, Optional

from binsettle.infrastructure.logging.logging import get_logger, order_context
from binsettle.infrastructure.utils.config import SettlementConfig
from binsettle.infrastructure.utils.timeutils import to_iso
from binsettle.models.trade_models import Order
from binsettle.services.orders.order_store import OrderStore
from binsettle.services.settlement.engine import SettlementEngine
from binsettle.services.settlement.errors import NotYetExpired, OrderNotFound, StoreUnavailable


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class ResolutionScheduler:
    def __init__(
        self,
        engine: SettlementEngine,
        orders: OrderStore,
        *,
        sweep_interval_sec: float = 5.0,
        sweep_batch_size: int = 200,
        claim_lease_sec: float = 120.0,
        retry_initial_backoff_sec: float = 1.0,
        retry_max_backoff_sec: float = 60.0,
        owner: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._log = get_logger("resolution_scheduler")
        self._engine = engine
        self._orders = orders
        self._sweep_interval = sweep_interval_sec
        self._sweep_batch = sweep_batch_size
        self._lease = claim_lease_sec
        self._retry_initial = retry_initial_backoff_sec
        self._retry_max = retry_max_backoff_sec
        self.owner = owner or default_owner()
        self._clock = clock or engine.now

        self._timers: Dict[str, asyncio.Task[None]] = {}
        self._in_flight: Dict[str, asyncio.Task[None]] = {}
        self._sweeper: Optional[asyncio.Task[None]] = None
        self._stop_evt = asyncio.Event()

    @classmethod
    def from_config(cls, engine: SettlementEngine, orders: OrderStore, cfg: SettlementConfig) -> "ResolutionScheduler":
        return cls(
            engine,
            orders,
            sweep_interval_sec=cfg.sweep_interval_sec,
            sweep_batch_size=cfg.sweep_batch_size,
            claim_lease_sec=cfg.claim_lease_sec,
            retry_initial_backoff_sec=cfg.retry_initial_backoff_sec,
            retry_max_backoff_sec=cfg.retry_max_backoff_sec,
        )

    @property
    def running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    @property
    def scheduled_count(self) -> int:
        return len(self._timers)

    # ------------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        """Re-arm timers for every PENDING order, then start the periodic sweep."""
        self._stop_evt.clear()
        try:
            pending = self._orders.list_pending()
        except StoreUnavailable as e:
            # the sweep loop retries on its own schedule
            self._log.error("recovery_scan_failed", error=e.message)
            pending = []
        for order in pending:
            await self._engine.watch_pending(order)
            self.schedule(order)
        self._log.info("scheduler_started", owner=self.owner, recovered=len(pending))
        self._sweeper = asyncio.create_task(self._sweep_loop(), name="resolution-sweep")

    async def stop(self) -> None:
        self._stop_evt.set()
        tasks = list(self._timers.values()) + list(self._in_flight.values())
        if self._sweeper is not None:
            tasks.append(self._sweeper)
            self._sweeper = None
        for t in tasks:
            t.cancel()
        # cancelled resolutions roll back; their orders stay PENDING for the next run
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timers.clear()
        self._in_flight.clear()
        self._log.info("scheduler_stopped", owner=self.owner)

    async def wait_idle(self) -> None:
        """Wait until no resolution is running (timers may still be armed)."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    # ------------------------------------------------------------------ timers

    def schedule(self, order: Order) -> None:
        """Arm a timer that hands the order to resolution at its expiry."""
        if order.is_terminal or order.id in self._timers or order.id in self._in_flight:
            return
        if self._stop_evt.is_set():
            return
        self._timers[order.id] = asyncio.create_task(self._fire_at(order), name=f"expiry-{order.id}")
        self._engine.metrics.pending_scheduled = len(self._timers)

    async def _fire_at(self, order: Order) -> None:
        try:
            delay = (order.expires_at - self._clock()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
        finally:
            self._timers.pop(order.id, None)
            self._engine.metrics.pending_scheduled = len(self._timers)
        self._dispatch(order.id)

    # ------------------------------------------------------------------ sweep

    async def _sweep_loop(self) -> None:
        while not self._stop_evt.is_set():
            await self.sweep_once()
            try:
                await asyncio.wait_for(self._stop_evt.wait(), timeout=self._sweep_interval)
            except asyncio.TimeoutError:
                pass

    async def sweep_once(self) -> int:
        """Dispatch every due PENDING order that is not already being resolved here."""
        now = self._clock()
        try:
            due = self._orders.find_due_pending(now, limit=self._sweep_batch)
        except StoreUnavailable as e:
            self._log.warning("sweep_failed", error=e.message)
            return 0
        self._engine.metrics.last_sweep_at = to_iso(now)

        dispatched = 0
        for order in due:
            if order.id in self._in_flight:
                continue
            timer = self._timers.pop(order.id, None)
            if timer is not None:
                timer.cancel()
            await self._engine.watch_pending(order)
            if self._dispatch(order.id):
                dispatched += 1
        if dispatched:
            self._log.info("sweep_dispatched", count=dispatched)
        return dispatched

    # ------------------------------------------------------------------ resolution

    def _dispatch(self, order_id: str) -> bool:
        if order_id in self._in_flight or self._stop_evt.is_set():
            return False
        task = asyncio.create_task(self._run_resolution(order_id), name=f"resolve-{order_id}")
        self._in_flight[order_id] = task
        task.add_done_callback(lambda _t, oid=order_id: self._in_flight.pop(oid, None))
        return True

    def _release(self, order_id: str) -> None:
        try:
            self._orders.release_claim(order_id, self.owner)
        except StoreUnavailable as e:
            # the lease expires on its own
            self._log.warning("claim_release_failed", order_id=order_id, error=e.message)

    async def _run_resolution(self, order_id: str) -> None:
        backoff = self._retry_initial
        attempt = 0
        with order_context(order_id=order_id, owner=self.owner):
            while not self._stop_evt.is_set():
                attempt += 1
                try:
                    if not self._orders.try_claim(order_id, self.owner, now=self._clock(), lease_sec=self._lease):
                        # resolved already, or another worker holds a live lease
                        self._log.debug("claim_not_acquired")
                        return
                    order = await self._engine.resolve_trade(order_id)
                    self._log.debug("resolution_done", state=order.state.value, attempts=attempt)
                    return
                except NotYetExpired:
                    # clock skew between processes: wait out the remainder here
                    order = self._orders.get(order_id)
                    if order is None:
                        return
                    delay = max(0.0, (order.expires_at - self._clock()).total_seconds())
                    await asyncio.sleep(delay)
                    continue
                except OrderNotFound:
                    self._log.error("resolution_order_missing")
                    return
                except asyncio.CancelledError:
                    # shutting down: let another worker take the order right away
                    self._release(order_id)
                    raise
                except Exception as e:
                    self._engine.metrics.resolution_retries += 1
                    level = self._log.warning if isinstance(e, StoreUnavailable) else self._log.error
                    level(
                        "resolution_retry",
                        attempt=attempt,
                        backoff_sec=round(backoff, 2),
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    try:
                        await asyncio.wait_for(self._stop_evt.wait(), timeout=backoff)
                    except asyncio.TimeoutError:
                        pass
                    backoff = min(self._retry_max, backoff * 2)
