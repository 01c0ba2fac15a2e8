"""User balance ledger.

Balances are Decimals stored as text. ``debit``/``credit`` take the cursor of
an open repository transaction so they compose with the order write; the
balance check and the write happen inside that same transaction.
"""

from __future__ import annotations

import sqlite3
from decimal import Decimal
from typing import Optional

from binsettle.infrastructure.logging.logging import get_logger
from binsettle.infrastructure.storage.sqlite_repository import SQLiteRepository
from binsettle.infrastructure.utils.timeutils import to_iso, utc_now
from binsettle.services.settlement.errors import InsufficientBalance


class Ledger:
    def __init__(self, repo: SQLiteRepository) -> None:
        self._repo = repo
        self._log = get_logger("ledger")

    def get_balance(self, user_id: str) -> Decimal:
        """Current balance; unknown users have a balance of zero."""
        rows = self._repo.query("SELECT balance FROM accounts WHERE user_id = ?", (user_id,))
        return Decimal(rows[0]["balance"]) if rows else Decimal("0")

    def ensure_account(self, user_id: str, opening_balance: Decimal) -> bool:
        """Create an account if it does not exist yet. Returns True when created."""
        if opening_balance < 0:
            raise ValueError("opening_balance must be >= 0")
        with self._repo.transaction() as cur:
            cur.execute(
                "INSERT OR IGNORE INTO accounts(user_id, balance, updated_at) VALUES(?,?,?)",
                (user_id, str(opening_balance), to_iso(utc_now())),
            )
            created = cur.rowcount == 1
        if created:
            self._log.info("account_created", user_id=user_id, balance=str(opening_balance))
        return created

    def debit(self, cur: sqlite3.Cursor, user_id: str, amount: Decimal) -> Decimal:
        """Reserve ``amount`` from the user's balance. Returns the new balance."""
        if amount <= 0:
            raise ValueError("debit amount must be > 0")
        balance = self._read_balance(cur, user_id)
        if balance is None or balance < amount:
            raise InsufficientBalance(
                f"balance {balance if balance is not None else Decimal('0')} < amount {amount}"
            )
        new_balance = balance - amount
        self._write_balance(cur, user_id, new_balance)
        return new_balance

    def credit(self, cur: sqlite3.Cursor, user_id: str, amount: Decimal) -> Decimal:
        """Add ``amount`` to the user's balance. Returns the new balance."""
        if amount <= 0:
            raise ValueError("credit amount must be > 0")
        balance = self._read_balance(cur, user_id)
        if balance is None:
            cur.execute(
                "INSERT INTO accounts(user_id, balance, updated_at) VALUES(?,?,?)",
                (user_id, str(amount), to_iso(utc_now())),
            )
            return amount
        new_balance = balance + amount
        self._write_balance(cur, user_id, new_balance)
        return new_balance

    @staticmethod
    def _read_balance(cur: sqlite3.Cursor, user_id: str) -> Optional[Decimal]:
        row = cur.execute("SELECT balance FROM accounts WHERE user_id = ?", (user_id,)).fetchone()
        return Decimal(row["balance"]) if row else None

    @staticmethod
    def _write_balance(cur: sqlite3.Cursor, user_id: str, balance: Decimal) -> None:
        cur.execute(
            "UPDATE accounts SET balance = ?, updated_at = ? WHERE user_id = ?",
            (str(balance), to_iso(utc_now()), user_id),
        )
