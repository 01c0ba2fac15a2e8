"""Shared fixtures: temporary SQLite store, a controllable clock and a scripted price feed."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from binsettle.infrastructure.storage.sqlite_repository import SQLiteRepository
from binsettle.infrastructure.utils.config import SymbolSeedConfig
from binsettle.models.market_models import Tick
from binsettle.services.ledger.ledger import Ledger
from binsettle.services.orders.order_store import OrderStore
from binsettle.services.settlement.engine import SettlementEngine
from binsettle.services.settlement.errors import FeedUnavailable
from binsettle.services.symbols.symbol_provider import SymbolProvider


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeFeed:
    """Stand-in for PriceFeedAdapter with scripted prices.

    ``snapshot`` is the entry price per feed symbol; ``exit`` the exit price
    (``None`` simulates a disconnected feed). ``errors`` are raised, one per
    call, by ``get_price_at`` before any price is returned.
    """

    def __init__(self):
        self.snapshot: Dict[str, Decimal] = {}
        self.exit: Dict[str, Optional[Decimal]] = {}
        self.errors: List[Exception] = []
        self.refcounts: Dict[str, int] = {}
        self.price_at_calls: List[tuple] = []

    async def acquire(self, symbol: str) -> None:
        self.refcounts[symbol] = self.refcounts.get(symbol, 0) + 1

    def release(self, symbol: str) -> None:
        self.refcounts[symbol] = self.refcounts.get(symbol, 0) - 1

    async def get_snapshot_price(self, symbol: str, timeout: Optional[float] = None) -> Decimal:
        price = self.snapshot.get(symbol)
        if price is None:
            raise FeedUnavailable(f"no {symbol} price")
        return price

    async def get_price_at(self, symbol: str, not_before: datetime, timeout: Optional[float] = None) -> Tick:
        self.price_at_calls.append((symbol, not_before))
        if self.errors:
            raise self.errors.pop(0)
        price = self.exit.get(symbol)
        if price is None:
            raise FeedUnavailable(f"no {symbol} tick")
        return Tick(symbol=symbol, price=price, timestamp=not_before + timedelta(milliseconds=250))

    def stats(self) -> dict:
        return {sym: {"connected": True, "refcount": n} for sym, n in self.refcounts.items()}

    async def close(self) -> None:
        pass


async def eventually(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds, yielding to the event loop in between."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def repo(tmp_path):
    r = SQLiteRepository(tmp_path / "settlement.db")
    yield r
    r.close()


@pytest.fixture
def ledger(repo):
    return Ledger(repo)


@pytest.fixture
def orders(repo):
    return OrderStore(repo)


@pytest.fixture
def symbols(repo):
    provider = SymbolProvider(repo)
    provider.seed(
        [
            SymbolSeedConfig(
                id="BTC", binance_symbol="BTCUSDT", min_amount="10", max_amount="1000", payout_rate="80"
            ),
            SymbolSeedConfig(
                id="ETH", binance_symbol="ETHUSDT", enabled=False, min_amount="1", max_amount="100"
            ),
        ]
    )
    return provider


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def feed():
    f = FakeFeed()
    f.snapshot["BTCUSDT"] = Decimal("42000.50")
    return f


@pytest.fixture
def engine(repo, ledger, orders, symbols, feed, clock):
    return SettlementEngine(
        repo=repo,
        ledger=ledger,
        orders=orders,
        symbols=symbols,
        feed=feed,
        price_wait_timeout_sec=0.1,
        max_duration_sec=3600,
        clock=clock,
    )


@pytest.fixture
def funded(ledger):
    """user-1 with a balance of 100."""
    ledger.ensure_account("user-1", Decimal("100"))
    return "user-1"
