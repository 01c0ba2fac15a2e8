"""Order domain model for binary-option trades."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from binsettle.infrastructure.utils.timeutils import to_iso


class Direction(str, Enum):
    UP = "UP"
    DOWN = "DOWN"

    @classmethod
    def parse(cls, value: str) -> "Direction":
        v = str(value).strip().upper()
        # Rise/Fall wording is accepted as an alias
        aliases = {"RISE": "UP", "CALL": "UP", "FALL": "DOWN", "PUT": "DOWN"}
        return cls(aliases.get(v, v))


class OrderState(str, Enum):
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"
    FAILED = "FAILED"


class Outcome(str, Enum):
    WIN = "WIN"
    LOSS = "LOSS"


class FailureReason(str, Enum):
    PRICE_UNAVAILABLE = "PRICE_UNAVAILABLE"


@dataclass(frozen=True)
class Order:
    id: str
    user_id: str
    symbol_id: str
    amount: Decimal
    direction: Direction
    entry_price: Decimal
    payout_rate: Decimal           # percent, copied from the symbol at open time
    created_at: datetime
    duration_seconds: int
    expires_at: datetime
    state: OrderState = OrderState.PENDING

    exit_price: Optional[Decimal] = None
    outcome: Optional[Outcome] = None
    profit_loss: Optional[Decimal] = None
    resolved_at: Optional[datetime] = None

    failure_reason: Optional[FailureReason] = None
    refunded: bool = False
    client_entry_price: Optional[Decimal] = None

    @property
    def is_terminal(self) -> bool:
        return self.state is not OrderState.PENDING

    def resolved(
        self,
        *,
        exit_price: Decimal,
        outcome: Outcome,
        profit_loss: Decimal,
        resolved_at: datetime,
    ) -> "Order":
        return replace(
            self,
            state=OrderState.RESOLVED,
            exit_price=exit_price,
            outcome=outcome,
            profit_loss=profit_loss,
            resolved_at=resolved_at,
        )

    def failed(self, *, reason: FailureReason, resolved_at: datetime, refunded: bool = False) -> "Order":
        return replace(
            self,
            state=OrderState.FAILED,
            failure_reason=reason,
            resolved_at=resolved_at,
            refunded=refunded,
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view (decimals as strings, times as ISO-8601)."""

        def _dec(v: Optional[Decimal]) -> Optional[str]:
            return None if v is None else str(v)

        return {
            "id": self.id,
            "user_id": self.user_id,
            "symbol_id": self.symbol_id,
            "amount": _dec(self.amount),
            "direction": self.direction.value,
            "entry_price": _dec(self.entry_price),
            "payout_rate": _dec(self.payout_rate),
            "created_at": to_iso(self.created_at),
            "duration_seconds": self.duration_seconds,
            "expires_at": to_iso(self.expires_at),
            "state": self.state.value,
            "exit_price": _dec(self.exit_price),
            "outcome": self.outcome.value if self.outcome else None,
            "profit_loss": _dec(self.profit_loss),
            "resolved_at": to_iso(self.resolved_at) if self.resolved_at else None,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "refunded": self.refunded,
            "client_entry_price": _dec(self.client_entry_price),
        }
