"""Settlement engine: opens binary-option orders and resolves them at expiry.

Open:    validate -> snapshot entry price -> [debit + insert] -> schedule
Resolve: price at expiry -> outcome -> [mark resolved + credit if won]

The bracketed steps are single SQLite transactions. Resolution is idempotent:
the terminal update only applies to a PENDING order, and the credit is issued
in the same transaction only when that update won.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional, Set, Union

from binsettle.infrastructure.logging.logging import get_logger, order_context
from binsettle.infrastructure.storage.sqlite_repository import SQLiteRepository
from binsettle.infrastructure.utils.timeutils import to_iso, utc_now
from binsettle.models.trade_models import Direction, FailureReason, Order, OrderState, Outcome
from binsettle.services.ledger.ledger import Ledger
from binsettle.services.market.price_feed import PriceFeedAdapter
from binsettle.services.monitoring.metrics import MetricsSnapshot
from binsettle.services.orders.order_store import OrderStore
from binsettle.services.settlement.errors import (
    AmountOutOfRange,
    FeedUnavailable,
    InsufficientBalance,
    InvalidDuration,
    NotYetExpired,
    OrderNotFound,
    StoreUnavailable,
    SymbolDisabled,
    SymbolNotFound,
    ValidationError,
)
from binsettle.services.settlement.outcome import settle
from binsettle.services.symbols.symbol_provider import SymbolProvider

OrderCallback = Callable[[Order], None]


def _to_decimal(value: Union[Decimal, int, float, str]) -> Decimal:
    # floats go through str() so 0.1 stays 0.1
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise AmountOutOfRange(f"amount is not a number: {value!r}") from e
    if not d.is_finite():
        raise AmountOutOfRange(f"amount is not finite: {value!r}")
    return d


class SettlementEngine:
    def __init__(
        self,
        *,
        repo: SQLiteRepository,
        ledger: Ledger,
        orders: OrderStore,
        symbols: SymbolProvider,
        feed: PriceFeedAdapter,
        price_wait_timeout_sec: float = 15.0,
        refund_on_price_unavailable: bool = False,
        max_duration_sec: Optional[int] = None,
        metrics: Optional[MetricsSnapshot] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._log = get_logger("settlement_engine")
        self._repo = repo
        self._ledger = ledger
        self._orders = orders
        self._symbols = symbols
        self._feed = feed
        self._price_wait = price_wait_timeout_sec
        self._refund_on_price_unavailable = refund_on_price_unavailable
        self._max_duration = max_duration_sec
        self._clock = clock
        self.metrics = metrics or MetricsSnapshot()

        self._on_opened: List[OrderCallback] = []
        # orders holding a reference on their symbol's feed subscription
        self._feed_refs: dict = {}
        self._resolving: Set[str] = set()

    def now(self) -> datetime:
        return self._clock()

    def add_open_listener(self, callback: OrderCallback) -> None:
        """Called with every newly opened order (the scheduler registers here)."""
        self._on_opened.append(callback)

    # ------------------------------------------------------------------ open

    async def open_trade(
        self,
        user_id: str,
        symbol_id: str,
        amount: Union[Decimal, int, float, str],
        direction: Union[Direction, str],
        duration: int,
        *,
        client_entry_price: Optional[Decimal] = None,
    ) -> Order:
        with order_context(user_id=user_id, symbol_id=symbol_id):
            try:
                order = await self._open_trade(
                    user_id, symbol_id, amount, direction, duration, client_entry_price
                )
            except ValidationError as e:
                self.metrics.orders_rejected += 1
                self._log.info("trade_rejected", code=e.code, reason=e.message)
                raise
            except FeedUnavailable as e:
                self.metrics.orders_rejected += 1
                self._log.warning("trade_rejected_no_price", reason=e.message)
                raise
            return order

    async def _open_trade(
        self,
        user_id: str,
        symbol_id: str,
        amount_in: Union[Decimal, int, float, str],
        direction_in: Union[Direction, str],
        duration: int,
        client_entry_price: Optional[Decimal],
    ) -> Order:
        symbol = self._symbols.get(symbol_id)
        if symbol is None:
            raise SymbolNotFound(f"symbol {symbol_id!r} not found")
        if not symbol.enabled:
            raise SymbolDisabled(f"trading is disabled for {symbol_id!r}")

        amount = _to_decimal(amount_in)
        if not symbol.accepts_amount(amount):
            raise AmountOutOfRange(
                f"amount {amount} outside [{symbol.min_amount}, {symbol.max_amount}]"
            )

        if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
            raise InvalidDuration(f"duration must be a positive number of seconds, got {duration!r}")
        if self._max_duration is not None and duration > self._max_duration:
            raise InvalidDuration(f"duration {duration}s exceeds maximum {self._max_duration}s")

        try:
            direction = direction_in if isinstance(direction_in, Direction) else Direction.parse(direction_in)
        except ValueError as e:
            raise ValidationError(f"direction must be UP or DOWN, got {direction_in!r}") from e

        balance = self._ledger.get_balance(user_id)
        if balance < amount:
            raise InsufficientBalance(f"balance {balance} < amount {amount}")

        entry_price = await self._feed.get_snapshot_price(symbol.binance_symbol)

        created_at = self._clock()
        order = Order(
            id=uuid.uuid4().hex,
            user_id=user_id,
            symbol_id=symbol.id,
            amount=amount,
            direction=direction,
            entry_price=entry_price,
            payout_rate=symbol.payout_rate,
            created_at=created_at,
            duration_seconds=duration,
            expires_at=created_at + timedelta(seconds=duration),
            client_entry_price=client_entry_price,
        )

        # balance is re-checked inside the transaction; the pre-check above only
        # avoids waiting on the feed for an order that cannot be funded
        with self._repo.transaction() as cur:
            balance_after = self._ledger.debit(cur, user_id, amount)
            self._orders.create(cur, order)

        self.metrics.orders_opened += 1
        self._log.info(
            "trade_opened",
            order_id=order.id,
            direction=direction.value,
            amount=str(amount),
            entry_price=str(entry_price),
            client_entry_price=str(client_entry_price) if client_entry_price is not None else None,
            payout_rate=str(symbol.payout_rate),
            expires_at=to_iso(order.expires_at),
            balance_after=str(balance_after),
        )
        self._repo.log_event(
            level="INFO",
            type="trade_open",
            message="Trade opened",
            data={"order_id": order.id, "user_id": user_id, "symbol_id": symbol.id, "amount": str(amount)},
        )

        await self._hold_feed(order.id, symbol.binance_symbol)
        for callback in self._on_opened:
            try:
                callback(order)
            except Exception as e:
                # the recovery sweep still finds the order
                self._log.error("open_listener_error", order_id=order.id, error=str(e))
        return order

    async def _hold_feed(self, order_id: str, feed_symbol: str) -> None:
        if order_id in self._feed_refs:
            return
        self._feed_refs[order_id] = feed_symbol
        await self._feed.acquire(feed_symbol)

    def _drop_feed(self, order_id: str) -> None:
        feed_symbol = self._feed_refs.pop(order_id, None)
        if feed_symbol is not None:
            self._feed.release(feed_symbol)

    async def watch_pending(self, order: Order) -> None:
        """Keep the feed of a recovered PENDING order subscribed until it resolves."""
        symbol = self._symbols.get(order.symbol_id)
        if symbol is not None:
            await self._hold_feed(order.id, symbol.binance_symbol)

    # ------------------------------------------------------------------ resolve

    async def resolve_trade(self, order_id: str) -> Order:
        """Settle a PENDING order. Terminal orders are returned unchanged."""
        with order_context(order_id=order_id):
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFound(f"order {order_id!r} not found")
            if order.is_terminal:
                self.metrics.duplicate_resolutions += 1
                self._log.info("resolve_duplicate_ignored", state=order.state.value)
                self._drop_feed(order_id)
                return order

            now = self._clock()
            if now < order.expires_at:
                raise NotYetExpired(
                    f"order {order_id} expires at {to_iso(order.expires_at)}, now {to_iso(now)}"
                )

            if order_id in self._resolving:
                # another coroutine of this process is already on it
                self.metrics.duplicate_resolutions += 1
                self._log.info("resolve_in_progress_ignored")
                return order

            self._resolving.add(order_id)
            try:
                return await self._resolve(order)
            finally:
                self._resolving.discard(order_id)

    async def _resolve(self, order: Order) -> Order:
        symbol = self._symbols.get(order.symbol_id)
        if symbol is None:
            self._log.error("resolve_symbol_missing", symbol_id=order.symbol_id)
            return self._fail(order, FailureReason.PRICE_UNAVAILABLE)

        try:
            tick = await self._feed.get_price_at(
                symbol.binance_symbol, order.expires_at, timeout=self._price_wait
            )
        except FeedUnavailable as e:
            self._log.warning("exit_price_unavailable", reason=e.message)
            return self._fail(order, FailureReason.PRICE_UNAVAILABLE)

        result = settle(
            direction=order.direction,
            amount=order.amount,
            payout_rate=order.payout_rate,
            entry_price=order.entry_price,
            exit_price=tick.price,
        )
        resolved_at = self._clock()

        balance_after: Optional[Decimal] = None
        with self._repo.transaction() as cur:
            updated = self._orders.update_resolved(
                cur,
                order.id,
                exit_price=tick.price,
                outcome=result.outcome,
                profit_loss=result.profit_loss,
                resolved_at=resolved_at,
            )
            if updated and result.credit > 0:
                balance_after = self._ledger.credit(cur, order.user_id, result.credit)

        if not updated:
            return self._already_settled(order.id)

        self._drop_feed(order.id)
        if result.outcome is Outcome.WIN:
            self.metrics.orders_won += 1
        else:
            self.metrics.orders_lost += 1
        self._log.info(
            "trade_resolved",
            outcome=result.outcome.value,
            entry_price=str(order.entry_price),
            exit_price=str(tick.price),
            exit_tick_at=to_iso(tick.timestamp),
            profit_loss=str(result.profit_loss),
            credited=str(result.credit),
            balance_after=str(balance_after) if balance_after is not None else None,
        )
        self._repo.log_event(
            level="INFO",
            type="trade_resolved",
            message=f"Trade resolved ({result.outcome.value})",
            data={
                "order_id": order.id,
                "user_id": order.user_id,
                "outcome": result.outcome.value,
                "exit_price": str(tick.price),
                "profit_loss": str(result.profit_loss),
            },
        )
        return order.resolved(
            exit_price=tick.price,
            outcome=result.outcome,
            profit_loss=result.profit_loss,
            resolved_at=resolved_at,
        )

    def _fail(self, order: Order, reason: FailureReason) -> Order:
        refund = self._refund_on_price_unavailable and reason is FailureReason.PRICE_UNAVAILABLE
        resolved_at = self._clock()
        with self._repo.transaction() as cur:
            marked = self._orders.mark_failed(
                cur, order.id, reason=reason, resolved_at=resolved_at, refunded=refund
            )
            if marked and refund:
                self._ledger.credit(cur, order.user_id, order.amount)

        if not marked:
            return self._already_settled(order.id)

        self._drop_feed(order.id)
        self.metrics.orders_failed += 1
        self._log.warning("trade_failed", reason=reason.value, refunded=refund)
        self._repo.log_event(
            level="WARNING",
            type="trade_failed",
            message="Trade failed: no exit price",
            data={"order_id": order.id, "user_id": order.user_id, "reason": reason.value, "refunded": refund},
        )
        return order.failed(reason=reason, resolved_at=resolved_at, refunded=refund)

    def _already_settled(self, order_id: str) -> Order:
        current = self._orders.get(order_id)
        if current is None:
            raise OrderNotFound(f"order {order_id!r} disappeared during resolution")
        if current.state is OrderState.PENDING:
            # the guarded update matched nothing yet the row is still PENDING
            raise StoreUnavailable(f"order {order_id} still PENDING after a terminal update")
        self.metrics.duplicate_resolutions += 1
        self._log.info("resolve_lost_race", state=current.state.value)
        self._drop_feed(order_id)
        return current
