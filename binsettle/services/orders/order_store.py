"""Durable order records.

Orders are inserted once, updated once (PENDING -> RESOLVED | FAILED) and never
deleted. The terminal updates are conditional on ``state = 'PENDING'`` so a
second resolution attempt cannot overwrite the first one.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from binsettle.infrastructure.storage.sqlite_repository import SQLiteRepository
from binsettle.infrastructure.utils.timeutils import from_iso, to_iso
from binsettle.models.trade_models import Direction, FailureReason, Order, OrderState, Outcome

_COLUMNS = (
    "id, user_id, symbol_id, amount, direction, entry_price, payout_rate, created_at, "
    "duration_seconds, expires_at, state, exit_price, outcome, profit_loss, resolved_at, "
    "failure_reason, refunded, client_entry_price"
)


def _dec(v: Optional[str]) -> Optional[Decimal]:
    return None if v is None else Decimal(v)


def _row_to_order(r: sqlite3.Row) -> Order:
    return Order(
        id=r["id"],
        user_id=r["user_id"],
        symbol_id=r["symbol_id"],
        amount=Decimal(r["amount"]),
        direction=Direction(r["direction"]),
        entry_price=Decimal(r["entry_price"]),
        payout_rate=Decimal(r["payout_rate"]),
        created_at=from_iso(r["created_at"]),
        duration_seconds=int(r["duration_seconds"]),
        expires_at=from_iso(r["expires_at"]),
        state=OrderState(r["state"]),
        exit_price=_dec(r["exit_price"]),
        outcome=Outcome(r["outcome"]) if r["outcome"] else None,
        profit_loss=_dec(r["profit_loss"]),
        resolved_at=from_iso(r["resolved_at"]) if r["resolved_at"] else None,
        failure_reason=FailureReason(r["failure_reason"]) if r["failure_reason"] else None,
        refunded=bool(r["refunded"]),
        client_entry_price=_dec(r["client_entry_price"]),
    )


class OrderStore:
    def __init__(self, repo: SQLiteRepository) -> None:
        self._repo = repo

    def create(self, cur: sqlite3.Cursor, order: Order) -> None:
        cur.execute(
            f"INSERT INTO orders({_COLUMNS}) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
            (
                order.id,
                order.user_id,
                order.symbol_id,
                str(order.amount),
                order.direction.value,
                str(order.entry_price),
                str(order.payout_rate),
                to_iso(order.created_at),
                order.duration_seconds,
                to_iso(order.expires_at),
                order.state.value,
                None,
                None,
                None,
                None,
                None,
                0,
                str(order.client_entry_price) if order.client_entry_price is not None else None,
            ),
        )

    def get(self, order_id: str, cur: Optional[sqlite3.Cursor] = None) -> Optional[Order]:
        sql = f"SELECT {_COLUMNS} FROM orders WHERE id = ?"
        if cur is not None:
            row = cur.execute(sql, (order_id,)).fetchone()
        else:
            rows = self._repo.query(sql, (order_id,))
            row = rows[0] if rows else None
        return _row_to_order(row) if row else None

    def update_resolved(
        self,
        cur: sqlite3.Cursor,
        order_id: str,
        *,
        exit_price: Decimal,
        outcome: Outcome,
        profit_loss: Decimal,
        resolved_at: datetime,
    ) -> bool:
        """PENDING -> RESOLVED. Returns False if the order was not PENDING."""
        cur.execute(
            """
            UPDATE orders
            SET state = ?, exit_price = ?, outcome = ?, profit_loss = ?, resolved_at = ?,
                claimed_by = NULL, claim_expires_at = NULL
            WHERE id = ? AND state = ?
            """,
            (
                OrderState.RESOLVED.value,
                str(exit_price),
                outcome.value,
                str(profit_loss),
                to_iso(resolved_at),
                order_id,
                OrderState.PENDING.value,
            ),
        )
        return cur.rowcount == 1

    def mark_failed(
        self,
        cur: sqlite3.Cursor,
        order_id: str,
        *,
        reason: FailureReason,
        resolved_at: datetime,
        refunded: bool = False,
    ) -> bool:
        """PENDING -> FAILED. Returns False if the order was not PENDING."""
        cur.execute(
            """
            UPDATE orders
            SET state = ?, failure_reason = ?, resolved_at = ?, refunded = ?,
                claimed_by = NULL, claim_expires_at = NULL
            WHERE id = ? AND state = ?
            """,
            (
                OrderState.FAILED.value,
                reason.value,
                to_iso(resolved_at),
                1 if refunded else 0,
                order_id,
                OrderState.PENDING.value,
            ),
        )
        return cur.rowcount == 1

    def find_due_pending(self, now: datetime, limit: int = 200) -> List[Order]:
        """PENDING orders whose expiry is at or before ``now``, oldest first."""
        rows = self._repo.query(
            f"""
            SELECT {_COLUMNS} FROM orders
            WHERE state = ? AND expires_at <= ?
            ORDER BY expires_at ASC
            LIMIT ?
            """,
            (OrderState.PENDING.value, to_iso(now), limit),
        )
        return [_row_to_order(r) for r in rows]

    def list_pending(self) -> List[Order]:
        rows = self._repo.query(
            f"SELECT {_COLUMNS} FROM orders WHERE state = ? ORDER BY expires_at ASC",
            (OrderState.PENDING.value,),
        )
        return [_row_to_order(r) for r in rows]

    def list_for_user(self, user_id: str, limit: int = 200) -> List[Order]:
        rows = self._repo.query(
            f"SELECT {_COLUMNS} FROM orders WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
            (user_id, limit),
        )
        return [_row_to_order(r) for r in rows]

    def count_by_state(self) -> dict:
        rows = self._repo.query("SELECT state, COUNT(*) AS n FROM orders GROUP BY state")
        counts = {s.value: 0 for s in OrderState}
        for r in rows:
            counts[r["state"]] = int(r["n"])
        return counts

    # --- resolution claims (cross-process mutual exclusion) ---

    def try_claim(self, order_id: str, owner: str, *, now: datetime, lease_sec: float) -> bool:
        """Take the resolution lease on a PENDING order.

        Only one caller can hold an unexpired lease; an expired lease (crashed
        worker) can be taken over.
        """
        with self._repo.transaction() as cur:
            cur.execute(
                """
                UPDATE orders
                SET claimed_by = ?, claim_expires_at = ?
                WHERE id = ? AND state = ?
                  AND (claimed_by IS NULL OR claimed_by = ? OR claim_expires_at <= ?)
                """,
                (
                    owner,
                    to_iso(now + timedelta(seconds=lease_sec)),
                    order_id,
                    OrderState.PENDING.value,
                    owner,
                    to_iso(now),
                ),
            )
            return cur.rowcount == 1

    def release_claim(self, order_id: str, owner: str) -> None:
        with self._repo.transaction() as cur:
            cur.execute(
                "UPDATE orders SET claimed_by = NULL, claim_expires_at = NULL WHERE id = ? AND claimed_by = ?",
                (order_id, owner),
            )
