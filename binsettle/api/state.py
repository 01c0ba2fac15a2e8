# binsettle/api/state.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from binsettle.infrastructure.storage.sqlite_repository import SQLiteRepository
from binsettle.infrastructure.utils.config import APIConfig
from binsettle.services.ledger.ledger import Ledger
from binsettle.services.market.price_feed import PriceFeedAdapter
from binsettle.services.monitoring.metrics import MetricsSnapshot
from binsettle.services.orders.order_store import OrderStore
from binsettle.services.settlement.engine import SettlementEngine


@dataclass
class AppState:
    engine: SettlementEngine
    repo: SQLiteRepository
    ledger: Ledger
    orders: OrderStore
    metrics: MetricsSnapshot
    api: APIConfig
    feed: Optional[PriceFeedAdapter] = None


_state: Optional[AppState] = None


def set_state(state: Optional[AppState]) -> None:
    global _state
    _state = state


def get_state() -> AppState:
    if _state is None:
        raise RuntimeError("API state not initialized. Start the service first (or init state).")
    return _state
