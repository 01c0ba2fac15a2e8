# binsettle/api/server.py
"""HTTP boundary for the settlement engine.

Authentication happens upstream: the gateway forwards the authenticated user id
in a header (``X-User-Id`` by default). Engine errors map to status codes here
and nowhere else.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from binsettle.api.state import get_state
from binsettle.infrastructure.logging.logging import get_logger
from binsettle.models.trade_models import Direction
from binsettle.services.settlement.errors import (
    OrderNotFound,
    SettlementError,
    SymbolNotFound,
    TransientError,
    ValidationError,
)

JsonDict = Dict[str, Any]

router = APIRouter()


# --------- Schemas ---------
class TradeRequest(BaseModel):
    symbolId: str = Field(..., min_length=1)
    amount: Decimal
    direction: Direction
    duration: int
    # informational only: the engine captures its own entry price
    entryPrice: Optional[Decimal] = None

    @field_validator("direction", mode="before")
    @classmethod
    def normalize_direction(cls, v: Any) -> Direction:
        if isinstance(v, Direction):
            return v
        return Direction.parse(str(v))


# --------- Error mapping ---------
def _status_for(err: SettlementError) -> int:
    if isinstance(err, (SymbolNotFound, OrderNotFound)):
        return 404
    if isinstance(err, ValidationError):
        return 400
    if isinstance(err, TransientError):
        return 503
    return 500


async def _settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
    status = _status_for(exc)
    if status >= 500:
        get_logger("api").warning("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(status_code=status, content={"error": exc.message, "code": exc.code})


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid input", "details": jsonable_encoder(exc.errors())},
    )


def current_user(request: Request) -> str:
    """Authenticated user id forwarded by the gateway; runs before the body is validated."""
    header = get_state().api.user_header
    user_id = (request.headers.get(header) or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


# --------- Routes ---------
@router.get("/health")
def health() -> JsonDict:
    s = get_state()
    feeds = s.feed.stats() if s.feed is not None else {}
    return {"ok": True, "feeds": {sym: f["connected"] for sym, f in feeds.items()}}


@router.post("/trades")
async def open_trade(payload: TradeRequest, user_id: str = Depends(current_user)) -> JsonDict:
    s = get_state()
    order = await s.engine.open_trade(
        user_id,
        payload.symbolId,
        payload.amount,
        payload.direction,
        payload.duration,
        client_entry_price=payload.entryPrice,
    )
    return {"success": True, "order": order.to_dict()}


@router.get("/orders")
def list_orders(limit: int = 200, user_id: str = Depends(current_user)) -> JsonDict:
    orders = get_state().orders.list_for_user(user_id, limit=limit)
    return {"ok": True, "orders": [o.to_dict() for o in orders]}


@router.get("/orders/{order_id}")
def get_order(order_id: str, user_id: str = Depends(current_user)) -> JsonDict:
    order = get_state().orders.get(order_id)
    # other users' orders are reported as missing
    if order is None or order.user_id != user_id:
        raise OrderNotFound(f"order {order_id!r} not found")
    return {"ok": True, "order": order.to_dict()}


@router.get("/balance")
def balance(user_id: str = Depends(current_user)) -> JsonDict:
    return {"ok": True, "user_id": user_id, "balance": str(get_state().ledger.get_balance(user_id))}


@router.get("/metrics")
def metrics() -> JsonDict:
    s = get_state()
    data = s.metrics.to_dict()
    data["orders"] = s.orders.count_by_state()
    if s.feed is not None:
        data["feeds"] = s.feed.stats()
    return {"ok": True, "metrics": data}


@router.get("/events")
def events(limit: int = 200) -> JsonDict:
    return {"ok": True, "events": get_state().repo.list_events(limit=limit)}


def create_app(cors_origins: Optional[List[str]] = None) -> FastAPI:
    app = FastAPI(title="Binary Option Settlement API", version="0.1.0")

    # CORS (frontend)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["http://localhost:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(SettlementError, _settlement_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.include_router(router)
    return app
