"""Read-only symbol configuration, seeded from YAML at startup."""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Optional

from binsettle.infrastructure.logging.logging import get_logger
from binsettle.infrastructure.storage.sqlite_repository import SQLiteRepository
from binsettle.infrastructure.utils.config import SymbolSeedConfig
from binsettle.models.market_models import SymbolConfig


class SymbolProvider:
    def __init__(self, repo: SQLiteRepository) -> None:
        self._repo = repo
        self._log = get_logger("symbol_provider")

    def get(self, symbol_id: str) -> Optional[SymbolConfig]:
        rows = self._repo.query(
            "SELECT id, binance_symbol, enabled, min_amount, max_amount, payout_rate FROM symbols WHERE id = ?",
            (symbol_id,),
        )
        if not rows:
            return None
        r = rows[0]
        return SymbolConfig(
            id=r["id"],
            binance_symbol=r["binance_symbol"],
            enabled=bool(r["enabled"]),
            min_amount=Decimal(r["min_amount"]),
            max_amount=Decimal(r["max_amount"]),
            payout_rate=Decimal(r["payout_rate"]),
        )

    def seed(self, symbols: Iterable[SymbolSeedConfig]) -> int:
        """Upsert configured symbols. Open orders keep the payout rate they were opened with."""
        n = 0
        with self._repo.transaction() as cur:
            for s in symbols:
                cur.execute(
                    """
                    INSERT INTO symbols(id, binance_symbol, enabled, min_amount, max_amount, payout_rate)
                    VALUES(?,?,?,?,?,?)
                    ON CONFLICT(id) DO UPDATE SET
                      binance_symbol = excluded.binance_symbol,
                      enabled = excluded.enabled,
                      min_amount = excluded.min_amount,
                      max_amount = excluded.max_amount,
                      payout_rate = excluded.payout_rate
                    """,
                    (
                        s.id,
                        s.binance_symbol,
                        1 if s.enabled else 0,
                        str(s.min_amount),
                        str(s.max_amount),
                        str(s.payout_rate),
                    ),
                )
                n += 1
        self._log.info("symbols_seeded", count=n)
        return n
