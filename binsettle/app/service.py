"""Service wiring: storage, ledger, feed, engine and scheduler in one event loop."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

from binsettle.api.state import AppState
from binsettle.infrastructure.logging.logging import get_logger
from binsettle.infrastructure.storage.sqlite_repository import SQLiteRepository
from binsettle.infrastructure.utils.config import SettlementServiceConfig
from binsettle.services.ledger.ledger import Ledger
from binsettle.services.market.price_feed import PriceFeedAdapter
from binsettle.services.monitoring.metrics import MetricsSnapshot
from binsettle.services.monitoring.metrics_store import write_metrics
from binsettle.services.orders.order_store import OrderStore
from binsettle.services.settlement.engine import SettlementEngine
from binsettle.services.settlement.errors import StoreUnavailable
from binsettle.services.settlement.scheduler import ResolutionScheduler
from binsettle.services.symbols.symbol_provider import SymbolProvider


class SettlementService:
    def __init__(
        self,
        config: SettlementServiceConfig,
        *,
        feed: Optional[PriceFeedAdapter] = None,
    ) -> None:
        self.config = config
        self._log = get_logger("service", environment=config.environment)

        self.repo = SQLiteRepository(
            Path(config.database.sqlite.path),
            busy_timeout_sec=config.database.sqlite.busy_timeout_sec,
        )
        self.ledger = Ledger(self.repo)
        self.orders = OrderStore(self.repo)
        self.symbols = SymbolProvider(self.repo)
        self.metrics = MetricsSnapshot()
        self.feed = feed or PriceFeedAdapter.from_config(config, on_state_change=self._on_feed_state)

        self.engine = SettlementEngine(
            repo=self.repo,
            ledger=self.ledger,
            orders=self.orders,
            symbols=self.symbols,
            feed=self.feed,
            price_wait_timeout_sec=config.feed.price_wait_timeout_sec,
            refund_on_price_unavailable=config.settlement.refund_on_price_unavailable,
            max_duration_sec=config.settlement.max_duration_sec,
            metrics=self.metrics,
        )
        self.scheduler = ResolutionScheduler.from_config(self.engine, self.orders, config.settlement)
        self.engine.add_open_listener(self.scheduler.schedule)

        self._metrics_task: Optional[asyncio.Task[None]] = None

    def app_state(self) -> AppState:
        return AppState(
            engine=self.engine,
            repo=self.repo,
            ledger=self.ledger,
            orders=self.orders,
            metrics=self.metrics,
            api=self.config.api,
            feed=self.feed,
        )

    # ------------------------------------------------------------------ lifecycle

    def bootstrap(self) -> None:
        """Seed symbols from config; in DEMO also open the configured demo accounts."""
        self.symbols.seed(self.config.symbols)

        if self.config.environment != "DEMO":
            if self.config.demo_accounts:
                self._log.warning("demo_accounts_ignored", count=len(self.config.demo_accounts))
            return
        opened = 0
        for user_id, balance in self.config.demo_accounts.items():
            if self.ledger.ensure_account(user_id, balance):
                opened += 1
        if opened:
            self._log.info("demo_accounts_opened", count=opened)

    async def start(self) -> None:
        self.bootstrap()
        await self.scheduler.start()
        self._metrics_task = asyncio.create_task(self._metrics_loop(), name="metrics-writer")
        self.repo.log_event(level="INFO", type="service_start", message="Settlement service started")
        self._log.info("service_started", db=str(self.repo.path))

    async def stop(self) -> None:
        if self._metrics_task is not None:
            self._metrics_task.cancel()
            await asyncio.gather(self._metrics_task, return_exceptions=True)
            self._metrics_task = None
        await self.scheduler.stop()
        await self.feed.close()
        self._publish_metrics()
        self.repo.log_event(level="INFO", type="service_stop", message="Settlement service stopped")
        self.repo.close()
        self._log.info("service_stopped")

    # ------------------------------------------------------------------ monitoring

    def _on_feed_state(self, symbol: str, connected: bool) -> None:
        self.repo.log_event(
            level="INFO" if connected else "WARNING",
            type="feed_reconnected" if connected else "feed_disconnected",
            message=f"Price feed {'connected' if connected else 'disconnected'}: {symbol}",
            data={"symbol": symbol},
        )

    def _publish_metrics(self) -> None:
        self.metrics.feeds = self.feed.stats()
        data = self.metrics.to_dict()
        try:
            data["orders"] = self.orders.count_by_state()
            write_metrics(data, Path(self.config.monitoring.metrics_path))
        except (OSError, StoreUnavailable) as e:
            self._log.warning("metrics_write_failed", error=str(e))

    async def _metrics_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.monitoring.metrics_interval_seconds)
            self._publish_metrics()


async def run_worker(config: SettlementServiceConfig) -> None:
    """Scheduler + feed only: resolves whatever is due, opened by any process."""
    service = SettlementService(config)
    await service.start()
    try:
        await asyncio.Event().wait()
    finally:
        await service.stop()
