"""Trading API routes — place orders, reconcile positions, read account and ledger.

The dashboard drives everything through one action endpoint, mirroring the
verbs it already speaks: place_order, get_positions (which runs a
reconciliation tick as a side effect) and get_account.
"""

import logging
from typing import Annotated, Literal, Union

import redis.asyncio as aioredis
from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from app.api.auth import current_user_id, require_api_key
from app.config import settings
from app.services.alerting import AlertService
from app.services.execution.alpaca_gateway import AlpacaGateway, resolve_credentials
from app.services.execution.order_handler import OrderIntent, OrderSubmissionHandler
from app.services.exit_guard import ExitGuard
from app.services.ledger import TradeLedger
from app.services.portfolio_snapshot import load_snapshot
from app.services.reconciliation import ReconciliationEngine
from app.services.risk_policy import RiskPolicyStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/trading", tags=["trading"])

# Module-level singletons
_ledger = TradeLedger()
_policy_store = RiskPolicyStore()
_exit_guard = ExitGuard()
_alerts = AlertService()


def get_ledger() -> TradeLedger:
    return _ledger


def get_policy_store() -> RiskPolicyStore:
    return _policy_store


def get_exit_guard() -> ExitGuard:
    return _exit_guard


def get_alerts() -> AlertService:
    return _alerts


async def get_gateway(user_id: str = Depends(current_user_id)):
    """Broker gateway bound to the account resolved for this user."""
    try:
        credentials = resolve_credentials(user_id)
    except ValueError as e:
        logger.error("Broker credentials unavailable: %s", e)
        raise HTTPException(status_code=503, detail=str(e))
    gateway = AlpacaGateway(credentials)
    try:
        yield gateway
    finally:
        await gateway.close()


class PlaceOrderAction(BaseModel):
    """Manual order from the dashboard."""

    model_config = {"populate_by_name": True}

    action: Literal["place_order"]
    symbol: str = Field(..., max_length=20)
    quantity: float
    side: Literal["buy", "sell"]
    order_type: Literal["market", "limit"] = Field("market", alias="orderType")
    limit_price: float | None = Field(None, alias="limitPrice")


class GetPositionsAction(BaseModel):
    action: Literal["get_positions"]


class GetAccountAction(BaseModel):
    action: Literal["get_account"]


TradingAction = Annotated[
    Union[PlaceOrderAction, GetPositionsAction, GetAccountAction],
    Field(discriminator="action"),
]


@router.post("", dependencies=[Depends(require_api_key)])
async def trading_action(
    req: TradingAction = Body(...),
    user_id: str = Depends(current_user_id),
    gateway: AlpacaGateway = Depends(get_gateway),
    ledger: TradeLedger = Depends(get_ledger),
    policies: RiskPolicyStore = Depends(get_policy_store),
    exit_guard: ExitGuard = Depends(get_exit_guard),
    alerts: AlertService = Depends(get_alerts),
):
    """Dispatch a dashboard action. Trading errors map to HTTP codes in main."""
    logger.info("Trading request from %s: %s", user_id, req.action)

    if isinstance(req, PlaceOrderAction):
        handler = OrderSubmissionHandler(gateway, ledger)
        result = await handler.submit(
            user_id,
            OrderIntent(
                symbol=req.symbol,
                quantity=req.quantity,
                side=req.side,
                order_type=req.order_type,
                limit_price=req.limit_price,
            ),
        )
        return {
            "success": True,
            "order": result.order.to_dict(),
            "trade": result.trade.to_dict(),
            "cancelled_orders": result.cancelled_order_ids,
        }

    if isinstance(req, GetPositionsAction):
        engine = ReconciliationEngine(
            gateway, ledger, policies, exit_guard, listeners=[alerts.on_reconciled]
        )
        result = await engine.reconcile(user_id)
        return {
            "success": True,
            "positions": [p.to_dict() for p in result.positions],
            "reconciliation": result.to_dict(),
        }

    account = await gateway.get_account()
    return {"success": True, "account": account.to_dict()}


@router.get("/trades")
async def list_trades(
    limit: int = Query(default=settings.trades_list_limit, ge=1, le=200),
    user_id: str = Depends(current_user_id),
    ledger: TradeLedger = Depends(get_ledger),
):
    """Most recent ledger rows for the user."""
    trades = await ledger.list_recent(user_id, limit=limit)
    return {"trades": [t.to_dict() for t in trades]}


@router.get("/snapshot")
async def get_snapshot(user_id: str = Depends(current_user_id)):
    """Last cached account + positions snapshot (read-only, may be a minute old)."""
    r = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        snapshot = await load_snapshot(r, user_id)
    finally:
        await r.aclose()
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No snapshot yet")
    return snapshot
