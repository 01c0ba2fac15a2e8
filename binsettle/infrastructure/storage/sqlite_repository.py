"""SQLite repository: schema, transactions and the audit event log.

The Ledger and the Order Store do not open their own transactions; they run
their statements on the cursor handed out by :meth:`SQLiteRepository.transaction`
so that a debit and an order insert (or an order update and a credit) commit
together or not at all.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from binsettle.infrastructure.logging.logging import get_logger
from binsettle.infrastructure.utils.timeutils import to_iso, utc_now
from binsettle.services.settlement.errors import StoreUnavailable

JsonDict = Dict[str, Any]

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS events (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      ts TEXT NOT NULL,
      level TEXT NOT NULL,
      type TEXT NOT NULL,
      message TEXT NOT NULL,
      data_json TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS accounts (
      user_id TEXT PRIMARY KEY,
      balance TEXT NOT NULL,
      updated_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS symbols (
      id TEXT PRIMARY KEY,
      binance_symbol TEXT NOT NULL,
      enabled INTEGER NOT NULL,
      min_amount TEXT NOT NULL,
      max_amount TEXT NOT NULL,
      payout_rate TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
      id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL,
      symbol_id TEXT NOT NULL,
      amount TEXT NOT NULL,
      direction TEXT NOT NULL,
      entry_price TEXT NOT NULL,
      payout_rate TEXT NOT NULL,
      created_at TEXT NOT NULL,
      duration_seconds INTEGER NOT NULL,
      expires_at TEXT NOT NULL,
      state TEXT NOT NULL,
      exit_price TEXT,
      outcome TEXT,
      profit_loss TEXT,
      resolved_at TEXT,
      failure_reason TEXT,
      refunded INTEGER NOT NULL DEFAULT 0,
      client_entry_price TEXT,
      claimed_by TEXT,
      claim_expires_at TEXT
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_due ON orders(state, expires_at);",
    "CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id, created_at);",
)


class SQLiteRepository:
    def __init__(self, db_path: Path, *, busy_timeout_sec: float = 5.0) -> None:
        self._log = get_logger("sqlite_repository")
        self._path = db_path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None: we issue BEGIN IMMEDIATE ourselves
        self._conn = sqlite3.connect(
            self._path.as_posix(),
            check_same_thread=False,
            isolation_level=None,
            timeout=busy_timeout_sec,
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()

    @property
    def path(self) -> Path:
        return self._path

    def _init_schema(self) -> None:
        with self._lock:
            cur = self._conn.cursor()
            if self._path.as_posix() != ":memory:":
                cur.execute("PRAGMA journal_mode=WAL")
            cur.execute("PRAGMA synchronous=NORMAL")
            for stmt in _SCHEMA:
                cur.execute(stmt)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Serializable write transaction.

        ``BEGIN IMMEDIATE`` takes SQLite's write lock up front, so a
        read-check-write on a balance cannot interleave with another writer
        (in this process or another one). Any sqlite error rolls the whole
        unit back and surfaces as :class:`StoreUnavailable`.
        """
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StoreUnavailable(f"begin failed: {e}") from e
            try:
                yield cur
            except BaseException as exc:
                self._rollback()
                if isinstance(exc, sqlite3.Error):
                    raise StoreUnavailable(f"transaction failed: {exc}") from exc
                raise
            else:
                try:
                    self._conn.commit()
                except sqlite3.Error as e:
                    self._rollback()
                    raise StoreUnavailable(f"commit failed: {e}") from e

    def _rollback(self) -> None:
        try:
            self._conn.rollback()
        except sqlite3.Error as e:
            self._log.error("rollback_failed", error=str(e))

    def query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        """Read-only query outside of a write transaction."""
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreUnavailable(f"query failed: {e}") from e

    def log_event(
        self,
        *,
        level: str,
        type: str,
        message: str,
        data: Optional[JsonDict] = None,
        ts: Optional[str] = None,
    ) -> None:
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO events(ts, level, type, message, data_json) VALUES(?,?,?,?,?)",
                    (ts or to_iso(utc_now()), level, type, message, json.dumps(data or {}, default=str)),
                )
            except sqlite3.Error as e:
                # audit rows are best effort; the order row is the source of truth
                self._log.warning("event_log_failed", type=type, error=str(e))

    def list_events(self, limit: int = 200) -> List[JsonDict]:
        rows = self.query(
            "SELECT ts, level, type, message, data_json FROM events ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        out: List[JsonDict] = []
        for r in rows:
            out.append(
                {
                    "ts": r["ts"],
                    "level": r["level"],
                    "type": r["type"],
                    "message": r["message"],
                    "data": json.loads(r["data_json"] or "{}"),
                }
            )
        return out
