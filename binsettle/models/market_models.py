"""Market domain models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal


@dataclass(frozen=True)
class Tick:
    symbol: str                 # feed identifier, e.g. BTCUSDT
    price: Decimal
    timestamp: datetime         # exchange event time (UTC)


@dataclass(frozen=True)
class SymbolConfig:
    id: str
    binance_symbol: str
    enabled: bool
    min_amount: Decimal
    max_amount: Decimal
    payout_rate: Decimal        # percent of stake paid as profit on a win

    def accepts_amount(self, amount: Decimal) -> bool:
        return self.min_amount <= amount <= self.max_amount
