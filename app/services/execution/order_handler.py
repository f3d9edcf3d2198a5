"""Manual order submission — validate, clear conflicts, place, record.

Every failure is surfaced to the caller except conflict cancellation, which
is advisory: it is logged, counted, and never blocks the new order.
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable

from app.config import settings
from app.models.trade import TradeRecord
from app.services import metrics
from app.services.errors import OrderNotFound, PersistenceError, TradingError, ValidationError
from app.services.execution.alpaca_gateway import AlpacaGateway, BrokerOrder
from app.services.ledger import TradeLedger

logger = logging.getLogger(__name__)

ORDER_SIDES = ("buy", "sell")
ORDER_TYPES = ("market", "limit")

FillCheckScheduler = Callable[[str, str], None]


@dataclass
class OrderIntent:
    """A manual buy/sell request from the dashboard."""

    symbol: str
    quantity: float
    side: str  # buy, sell
    order_type: str = "market"  # market, limit
    limit_price: float | None = None

    def validate(self) -> None:
        """Raise ValidationError on bad input. Makes no network calls."""
        if not self.symbol or not self.symbol.strip():
            raise ValidationError("symbol is required")
        if self.quantity is None or not math.isfinite(self.quantity) or self.quantity <= 0:
            raise ValidationError("quantity must be greater than 0")
        if self.side not in ORDER_SIDES:
            raise ValidationError(f"side must be one of {ORDER_SIDES}")
        if self.order_type not in ORDER_TYPES:
            raise ValidationError(f"order type must be one of {ORDER_TYPES}")
        if self.limit_price is not None and not math.isfinite(self.limit_price):
            raise ValidationError("limit price must be a finite number")
        if self.order_type == "limit" and (self.limit_price is None or self.limit_price <= 0):
            raise ValidationError("limit orders need a limit price greater than 0")


@dataclass
class SubmissionResult:
    order: BrokerOrder
    trade: TradeRecord
    cancelled_order_ids: list[str]


def schedule_fill_check(user_id: str, broker_order_id: str) -> None:
    """Enqueue the one-shot fill check on the Celery worker."""
    from app.tasks.trade_tasks import confirm_fill

    confirm_fill.apply_async(
        args=[user_id, broker_order_id],
        countdown=settings.fill_check_delay_seconds,
    )


class OrderSubmissionHandler:
    """Forward manual orders to the broker and record them in the ledger."""

    def __init__(
        self,
        gateway: AlpacaGateway,
        ledger: TradeLedger,
        fill_check_scheduler: FillCheckScheduler | None = None,
    ) -> None:
        self._gateway = gateway
        self._ledger = ledger
        self._schedule_fill_check = fill_check_scheduler or schedule_fill_check

    async def submit(self, user_id: str, intent: OrderIntent) -> SubmissionResult:
        """Place a manual order.

        Steps:
        1. Validate (no network on failure)
        2. Cancel resting orders on the opposite side of the same symbol
        3. Place the order (gtc for limit, day for market)
        4. Record a pending trade
        5. For market orders, schedule a single fill check
        """
        intent.validate()
        symbol = intent.symbol.strip().upper()

        cancelled = await self._cancel_conflicting(symbol, intent.side)

        # OrderRejected propagates untouched, no retry
        order = await self._gateway.place_order(
            symbol=symbol,
            quantity=intent.quantity,
            side=intent.side,
            order_type=intent.order_type,
            limit_price=intent.limit_price,
        )

        if order.is_filled and order.filled_avg_price is not None:
            entry_price = order.filled_avg_price
        elif intent.order_type == "limit":
            entry_price = intent.limit_price
        else:
            entry_price = None

        trade = await self._ledger.insert(
            TradeRecord(
                user_id=user_id,
                symbol=symbol,
                side=intent.side,
                quantity=intent.quantity,
                entry_price=entry_price,
                status="pending",
                broker_order_id=order.id,
            )
        )

        if intent.order_type == "market":
            try:
                self._schedule_fill_check(user_id, order.id)
            except Exception as e:
                # Reconciliation settles the row later if the check never runs
                logger.error("Failed to schedule fill check for %s: %s", order.id, e)

        return SubmissionResult(order=order, trade=trade, cancelled_order_ids=cancelled)

    async def _cancel_conflicting(self, symbol: str, side: str) -> list[str]:
        """Cancel opposite-side resting orders. Failures are counted, never raised."""
        try:
            open_orders = await self._gateway.list_open_orders(symbol)
        except TradingError as e:
            logger.warning("Could not list open orders for %s, skipping conflict check: %s", symbol, e)
            metrics.CANCELLATION_FAILURES.labels(symbol=symbol).inc()
            return []

        cancelled = []
        for existing in open_orders:
            if existing.side == side:
                continue
            logger.info("Cancelling conflicting %s order %s for %s", existing.side, existing.id, symbol)
            try:
                await self._gateway.cancel_order(existing.id)
                cancelled.append(existing.id)
            except TradingError as e:
                logger.warning("Swallowed cancellation failure for %s (%s): %s", symbol, existing.id, e)
                metrics.CANCELLATION_FAILURES.labels(symbol=symbol).inc()
                continue
            try:
                await self._ledger.update_where(
                    {"status": "cancelled"}, broker_order_id=existing.id
                )
            except PersistenceError as e:
                logger.warning("Cancelled %s but could not mark it in the ledger: %s", existing.id, e)
        return cancelled


async def confirm_fill(gateway: AlpacaGateway, ledger: TradeLedger, broker_order_id: str) -> str:
    """One-shot fill check for a market order. Returns the check result.

    Never polls again: an order still live here stays pending until a
    reconciliation tick settles it.
    """
    try:
        order = await gateway.get_order(broker_order_id)
    except OrderNotFound:
        logger.warning("Fill check: broker no longer knows order %s, leaving record as-is", broker_order_id)
        metrics.FILL_CHECKS.labels(result="not_found").inc()
        return "not_found"

    if order.is_filled:
        await ledger.update_where(
            {
                "status": "filled",
                "entry_price": order.filled_avg_price,
                "current_price": order.filled_avg_price,
            },
            broker_order_id=broker_order_id,
        )
        logger.info("Fill check: order %s filled @ %s", broker_order_id, order.filled_avg_price)
        metrics.FILL_CHECKS.labels(result="filled").inc()
        return "filled"

    if order.ledger_status is not None:
        await ledger.update_where({"status": order.ledger_status}, broker_order_id=broker_order_id)
        logger.info("Fill check: order %s ended as %s", broker_order_id, order.status)
        metrics.FILL_CHECKS.labels(result=order.ledger_status).inc()
        return order.ledger_status

    metrics.FILL_CHECKS.labels(result="pending").inc()
    return "pending"
