"""Settlement error taxonomy.

``ValidationError`` subclasses are raised before any state is mutated and are
never retried. ``TransientError`` subclasses mean "try again later": the caller
gets them on open, the scheduler retries them on resolve.
"""

from __future__ import annotations


class SettlementError(Exception):
    code = "SETTLEMENT_ERROR"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(SettlementError):
    code = "VALIDATION_ERROR"


class SymbolNotFound(ValidationError):
    code = "SYMBOL_NOT_FOUND"


class SymbolDisabled(ValidationError):
    code = "SYMBOL_DISABLED"


class AmountOutOfRange(ValidationError):
    code = "AMOUNT_OUT_OF_RANGE"


class InvalidDuration(ValidationError):
    code = "INVALID_DURATION"


class InsufficientBalance(ValidationError):
    code = "INSUFFICIENT_BALANCE"


class OrderNotFound(SettlementError):
    code = "ORDER_NOT_FOUND"


class TransientError(SettlementError):
    code = "TRANSIENT_ERROR"


class FeedUnavailable(TransientError):
    code = "FEED_UNAVAILABLE"


class StoreUnavailable(TransientError):
    code = "STORE_UNAVAILABLE"


class NotYetExpired(SettlementError):
    code = "NOT_YET_EXPIRED"
