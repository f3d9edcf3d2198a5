"""Reconciliation engine — keeps the ledger aligned with the broker and enforces exits.

This is the most critical module. It runs unattended on a timer and from the
dashboard's refresh, possibly both at once, so:
- Every position is handled independently; one bad symbol never stops the tick
- Automated exits are guarded by a per-(user, symbol) marker, so overlapping
  ticks cannot sell the same position twice
- Broker state is authoritative; the ledger follows it

Per tick, for one user:
1. Load the risk policy (defaults when the user never saved one)
2. Pull live positions
3. Settle pending buys for each held symbol and refresh P/L on filled buys
4. Submit a market sell for the full quantity when the exit policy triggers
5. Resolve pending sells against the broker: release finished exit markers,
   renew the markers of sells still working
6. Hand the result to listeners (alerts)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable

from app.models.trade import TradeRecord
from app.services import metrics
from app.services.errors import OrderNotFound, OrderRejected, TradingError
from app.services.execution.alpaca_gateway import AlpacaGateway, BrokerPosition
from app.services.exit_guard import CLAIMED, ExitGuard
from app.services.ledger import TradeLedger
from app.services.risk_policy import RiskPolicySettings, RiskPolicyStore

logger = logging.getLogger(__name__)


class ExitReason(str, Enum):
    """Why a position is being liquidated automatically."""

    PROFIT_TARGET = "profit_target"
    STOP_LOSS = "stop_loss"


def evaluate_exit(pl_pct: float, policy: RiskPolicySettings) -> ExitReason | None:
    """Exit decision for one position. Profit target is checked first."""
    if not policy.automated_trading_enabled:
        return None
    if pl_pct >= policy.profit_target_pct:
        return ExitReason.PROFIT_TARGET
    if policy.stop_loss_enabled and pl_pct <= -policy.stop_loss_pct:
        return ExitReason.STOP_LOSS
    return None


@dataclass
class ExitAttempt:
    symbol: str
    quantity: float
    pl_pct: float
    reason: ExitReason
    broker_order_id: str | None = None
    error: str | None = None

    @property
    def submitted(self) -> bool:
        return self.broker_order_id is not None


@dataclass
class ReconciliationResult:
    """Outcome of one tick."""

    user_id: str
    positions: list[BrokerPosition] = field(default_factory=list)
    settled: int = 0
    exits: list[ExitAttempt] = field(default_factory=list)
    in_flight: list[str] = field(default_factory=list)
    resolved_sells: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def submitted_exits(self) -> list[ExitAttempt]:
        return [e for e in self.exits if e.submitted]

    @property
    def failed_exits(self) -> list[ExitAttempt]:
        return [e for e in self.exits if not e.submitted]

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "positions": len(self.positions),
            "settled": self.settled,
            "exits": [
                {
                    "symbol": e.symbol,
                    "quantity": e.quantity,
                    "pl_pct": round(e.pl_pct, 4),
                    "reason": e.reason.value,
                    "broker_order_id": e.broker_order_id,
                    "error": e.error,
                }
                for e in self.exits
            ],
            "in_flight": self.in_flight,
            "resolved_sells": self.resolved_sells,
            "errors": self.errors,
            "started_at": self.started_at.isoformat(),
        }


ReconciliationListener = Callable[[ReconciliationResult], Awaitable[None]]


class ReconciliationEngine:
    """Aligns the trade ledger with broker positions and applies the exit policy."""

    def __init__(
        self,
        gateway: AlpacaGateway,
        ledger: TradeLedger,
        policies: RiskPolicyStore,
        exit_guard: ExitGuard,
        listeners: list[ReconciliationListener] | None = None,
    ) -> None:
        self._gateway = gateway
        self._ledger = ledger
        self._policies = policies
        self._exit_guard = exit_guard
        self._listeners: list[ReconciliationListener] = list(listeners or [])

    def add_listener(self, listener: ReconciliationListener) -> None:
        self._listeners.append(listener)

    async def reconcile(self, user_id: str) -> ReconciliationResult:
        """Run one tick for a user.

        Policy or position fetch failures abort the tick and propagate; the
        next refresh retries. Everything after that is isolated per symbol.
        """
        result = ReconciliationResult(user_id=user_id)
        try:
            policy = await self._policies.get(user_id) or RiskPolicySettings()
            result.positions = await self._gateway.list_positions()
        except TradingError:
            metrics.RECONCILIATION_TICKS.labels(outcome="error").inc()
            raise

        for position in result.positions:
            try:
                await self._reconcile_position(user_id, position, policy, result)
            except Exception as e:
                logger.error("Reconciliation failed for %s/%s: %s", user_id, position.symbol, e)
                result.errors[position.symbol] = str(e)

        await self._resolve_pending_sells(user_id, result)

        metrics.RECONCILIATION_TICKS.labels(outcome="ok").inc()
        logger.info(
            "Reconciled %s: %d positions, %d settled, %d exits submitted, %d in flight, %d errors",
            user_id, len(result.positions), result.settled, len(result.submitted_exits),
            len(result.in_flight), len(result.errors),
        )

        for listener in self._listeners:
            try:
                await listener(result)
            except Exception as e:
                logger.warning("Reconciliation listener failed: %s", e)
        return result

    async def _reconcile_position(
        self,
        user_id: str,
        position: BrokerPosition,
        policy: RiskPolicySettings,
        result: ReconciliationResult,
    ) -> None:
        pl_pct = position.pl_pct

        # Backstop for market buys the one-shot fill check missed
        result.settled += await self._ledger.update_where(
            {
                "status": "filled",
                "current_price": position.current_price,
                "entry_price": position.avg_entry_price,
                "profit_loss_percentage": pl_pct,
            },
            user_id=user_id,
            symbol=position.symbol,
            side="buy",
            status="pending",
        )
        await self._ledger.update_where(
            {"current_price": position.current_price, "profit_loss_percentage": pl_pct},
            user_id=user_id,
            symbol=position.symbol,
            side="buy",
            status="filled",
        )

        reason = evaluate_exit(pl_pct, policy)
        if reason is None:
            return

        holder = await self._exit_guard.holder(user_id, position.symbol)
        if holder is None:
            # The ledger outlives the marker: a working sell still blocks a new exit
            working = [
                r for r in await self._ledger.list_pending(user_id, side="sell")
                if r.symbol == position.symbol
            ]
            if working:
                holder = working[-1].broker_order_id
                await self._exit_guard.attach_order(user_id, position.symbol, holder)
        if holder is not None or not await self._exit_guard.claim(user_id, position.symbol):
            logger.info(
                "Exit for %s already in flight (%s), skipping",
                position.symbol, holder or CLAIMED,
            )
            result.in_flight.append(position.symbol)
            return

        await self._submit_exit(user_id, position, pl_pct, reason, result)

    async def _submit_exit(
        self,
        user_id: str,
        position: BrokerPosition,
        pl_pct: float,
        reason: ExitReason,
        result: ReconciliationResult,
    ) -> None:
        # Goes straight to the broker: no conflict cancellation on this path
        attempt = ExitAttempt(
            symbol=position.symbol, quantity=position.quantity, pl_pct=pl_pct, reason=reason,
        )
        result.exits.append(attempt)
        logger.warning(
            "Auto-selling %s x%s at %.2f%% P/L (%s)",
            position.symbol, position.quantity, pl_pct, reason.value,
        )

        try:
            order = await self._gateway.place_order(
                symbol=position.symbol,
                quantity=position.quantity,
                side="sell",
                order_type="market",
            )
        except OrderRejected as e:
            attempt.error = e.reason
            metrics.AUTO_EXIT_FAILURES.inc()
            await self._exit_guard.release(user_id, position.symbol)
            await self._ledger.insert(
                TradeRecord(
                    user_id=user_id,
                    symbol=position.symbol,
                    side="sell",
                    quantity=position.quantity,
                    entry_price=position.current_price,
                    current_price=position.current_price,
                    profit_loss_percentage=pl_pct,
                    status="failed",
                )
            )
            logger.error("Auto-sell rejected for %s: %s", position.symbol, e.reason)
            return
        except TradingError as e:
            # Outcome unknown: keep the marker until TTL so no second sell goes out
            attempt.error = str(e)
            metrics.AUTO_EXIT_FAILURES.inc()
            logger.error("Auto-sell for %s did not complete: %s", position.symbol, e)
            return

        attempt.broker_order_id = order.id
        metrics.AUTO_EXIT_ORDERS.labels(reason=reason.value).inc()
        await self._exit_guard.attach_order(user_id, position.symbol, order.id)
        await self._ledger.insert(
            TradeRecord(
                user_id=user_id,
                symbol=position.symbol,
                side="sell",
                quantity=position.quantity,
                entry_price=position.current_price,
                status="pending",
                broker_order_id=order.id,
            )
        )

    async def _resolve_pending_sells(self, user_id: str, result: ReconciliationResult) -> None:
        """Settle pending sells whose broker order has finished, and free their markers.

        Runs after the exit pass so a sell that just filled is not followed by
        another exit on a still-stale position in the same tick.
        """
        try:
            pending = await self._ledger.list_pending(user_id, side="sell")
        except TradingError as e:
            logger.error("Could not load pending sells for %s: %s", user_id, e)
            result.errors["pending_sells"] = str(e)
            return

        for record in pending:
            order_id = record.broker_order_id
            try:
                order = await self._gateway.get_order(order_id)
            except OrderNotFound:
                logger.warning("Pending sell %s unknown to broker, leaving as-is", order_id)
                continue
            except Exception as e:
                logger.error("Order lookup failed for %s: %s", order_id, e)
                result.errors[record.symbol] = str(e)
                continue

            status = order.ledger_status
            if status is None:
                try:
                    await self._exit_guard.renew(user_id, record.symbol, order_id)
                except Exception as e:
                    logger.error("Could not renew exit marker for %s: %s", order_id, e)
                    result.errors[record.symbol] = str(e)
                continue

            try:
                patch: dict = {"status": status}
                if order.is_filled and order.filled_avg_price is not None:
                    patch["current_price"] = order.filled_avg_price
                await self._ledger.update_where(patch, broker_order_id=order_id)
                await self._exit_guard.release(user_id, record.symbol, order_id=order_id)
            except Exception as e:
                logger.error("Could not settle sell %s: %s", order_id, e)
                result.errors[record.symbol] = str(e)
                continue
            result.resolved_sells[order_id] = status
            logger.info("Sell %s for %s settled as %s", order_id, record.symbol, status)
