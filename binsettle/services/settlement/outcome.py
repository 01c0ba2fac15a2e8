"""Binary-option outcome and payout rules."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from binsettle.models.trade_models import Direction, Outcome

_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class Settlement:
    outcome: Outcome
    profit_loss: Decimal
    credit: Decimal     # amount returned to the ledger at close (0 on a loss)


def decide_outcome(direction: Direction, entry_price: Decimal, exit_price: Decimal) -> Outcome:
    """UP wins on a strictly higher exit, DOWN on a strictly lower one.

    An unchanged price is a LOSS for both directions: there is no push/tie.
    """
    if direction is Direction.UP and exit_price > entry_price:
        return Outcome.WIN
    if direction is Direction.DOWN and exit_price < entry_price:
        return Outcome.WIN
    return Outcome.LOSS


def settle(
    *,
    direction: Direction,
    amount: Decimal,
    payout_rate: Decimal,
    entry_price: Decimal,
    exit_price: Decimal,
) -> Settlement:
    outcome = decide_outcome(direction, entry_price, exit_price)
    if outcome is Outcome.WIN:
        profit = amount * payout_rate / _HUNDRED
        return Settlement(outcome=outcome, profit_loss=profit, credit=amount + profit)
    return Settlement(outcome=outcome, profit_loss=-amount, credit=Decimal("0"))
