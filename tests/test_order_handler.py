"""Tests for manual order submission and the one-shot fill check."""

from unittest.mock import MagicMock

import pytest
from prometheus_client import REGISTRY

from app.models.trade import TradeRecord
from app.services.errors import GatewayUnavailable, OrderNotFound, OrderRejected, ValidationError
from app.services.execution.order_handler import (
    OrderIntent,
    OrderSubmissionHandler,
    confirm_fill,
)
from tests.conftest import make_order


def swallowed_cancellations(symbol: str) -> float:
    return REGISTRY.get_sample_value(
        "cancellation_failures_swallowed_total", {"symbol": symbol}
    ) or 0.0


@pytest.fixture
def scheduler() -> MagicMock:
    return MagicMock()


@pytest.fixture
def handler(gateway, ledger, scheduler) -> OrderSubmissionHandler:
    return OrderSubmissionHandler(gateway, ledger, fill_check_scheduler=scheduler)


class TestValidation:
    @pytest.mark.asyncio
    async def test_zero_quantity_rejected_before_network(self, handler, gateway):
        with pytest.raises(ValidationError, match="quantity"):
            await handler.submit("user-1", OrderIntent(symbol="TSLA", quantity=0, side="buy"))
        assert gateway.mock_calls == []

    @pytest.mark.asyncio
    async def test_negative_quantity_rejected(self, handler, gateway):
        with pytest.raises(ValidationError):
            await handler.submit("user-1", OrderIntent(symbol="TSLA", quantity=-5, side="buy"))
        assert gateway.mock_calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [float("nan"), float("inf")])
    async def test_non_finite_quantity_rejected(self, handler, gateway, ledger, quantity):
        with pytest.raises(ValidationError, match="quantity"):
            await handler.submit("user-1", OrderIntent(symbol="TSLA", quantity=quantity, side="buy"))
        assert gateway.mock_calls == []
        assert ledger.records == []

    def test_nan_limit_price_rejected(self):
        intent = OrderIntent(
            symbol="TSLA", quantity=1, side="buy", order_type="limit", limit_price=float("nan"),
        )
        with pytest.raises(ValidationError, match="limit price"):
            intent.validate()

    @pytest.mark.asyncio
    async def test_blank_symbol_rejected(self, handler, gateway):
        with pytest.raises(ValidationError, match="symbol"):
            await handler.submit("user-1", OrderIntent(symbol="  ", quantity=1, side="buy"))
        assert gateway.mock_calls == []

    @pytest.mark.asyncio
    async def test_limit_without_price_rejected(self, handler, gateway):
        intent = OrderIntent(symbol="TSLA", quantity=1, side="buy", order_type="limit")
        with pytest.raises(ValidationError, match="limit price"):
            await handler.submit("user-1", intent)
        assert gateway.mock_calls == []

    def test_limit_with_zero_price_rejected(self):
        intent = OrderIntent(symbol="TSLA", quantity=1, side="buy", order_type="limit", limit_price=0)
        with pytest.raises(ValidationError):
            intent.validate()

    def test_unknown_side_rejected(self):
        with pytest.raises(ValidationError, match="side"):
            OrderIntent(symbol="TSLA", quantity=1, side="short").validate()

    def test_valid_market_order_passes(self):
        OrderIntent(symbol="TSLA", quantity=0.5, side="sell").validate()


class TestConflictCancellation:
    @pytest.mark.asyncio
    async def test_opposing_order_cancelled_before_placing(self, handler, gateway):
        gateway.list_open_orders.return_value = [
            make_order(id="resting-sell", symbol="TSLA", side="sell", order_type="limit"),
        ]
        gateway.place_order.return_value = make_order(id="new-buy", symbol="TSLA")

        result = await handler.submit("user-1", OrderIntent(symbol="TSLA", quantity=10, side="buy"))

        call_names = [c[0] for c in gateway.mock_calls]
        assert call_names == ["list_open_orders", "cancel_order", "place_order"]
        gateway.cancel_order.assert_awaited_once_with("resting-sell")
        assert result.cancelled_order_ids == ["resting-sell"]

    @pytest.mark.asyncio
    async def test_same_side_orders_left_alone(self, handler, gateway):
        gateway.list_open_orders.return_value = [make_order(id="resting-buy", symbol="TSLA", side="buy")]
        gateway.place_order.return_value = make_order(id="new-buy", symbol="TSLA")

        await handler.submit("user-1", OrderIntent(symbol="TSLA", quantity=10, side="buy"))

        gateway.cancel_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancelled_order_marked_in_ledger(self, handler, gateway, ledger):
        await ledger.insert(TradeRecord(
            user_id="user-1", symbol="TSLA", side="sell", quantity=10,
            status="pending", broker_order_id="resting-sell",
        ))
        gateway.list_open_orders.return_value = [make_order(id="resting-sell", symbol="TSLA", side="sell")]
        gateway.place_order.return_value = make_order(id="new-buy", symbol="TSLA")

        await handler.submit("user-1", OrderIntent(symbol="TSLA", quantity=10, side="buy"))

        assert ledger.records[0].status == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_failure_is_swallowed_and_counted(self, handler, gateway):
        before = swallowed_cancellations("NFLX")
        gateway.list_open_orders.return_value = [make_order(id="resting-sell", symbol="NFLX", side="sell")]
        gateway.cancel_order.side_effect = GatewayUnavailable("broker down")
        gateway.place_order.return_value = make_order(id="new-buy", symbol="NFLX")

        result = await handler.submit("user-1", OrderIntent(symbol="NFLX", quantity=1, side="buy"))

        gateway.place_order.assert_awaited_once()
        assert result.cancelled_order_ids == []
        assert swallowed_cancellations("NFLX") == before + 1

    @pytest.mark.asyncio
    async def test_open_order_lookup_failure_does_not_block(self, handler, gateway):
        gateway.list_open_orders.side_effect = GatewayUnavailable("timeout")
        gateway.place_order.return_value = make_order(id="new-buy", symbol="AMD")

        result = await handler.submit("user-1", OrderIntent(symbol="AMD", quantity=3, side="buy"))

        assert result.order.id == "new-buy"


class TestPlacement:
    @pytest.mark.asyncio
    async def test_market_order_recorded_pending_and_fill_check_scheduled(
        self, handler, gateway, ledger, scheduler
    ):
        gateway.place_order.return_value = make_order(id="o-1", symbol="TSLA")

        result = await handler.submit("user-1", OrderIntent(symbol="tsla", quantity=10, side="buy"))

        gateway.place_order.assert_awaited_once_with(
            symbol="TSLA", quantity=10, side="buy", order_type="market", limit_price=None,
        )
        trade = result.trade
        assert trade.status == "pending"
        assert trade.broker_order_id == "o-1"
        assert trade.entry_price is None
        assert trade.user_id == "user-1"
        scheduler.assert_called_once_with("user-1", "o-1")

    @pytest.mark.asyncio
    async def test_limit_order_uses_limit_price_and_no_fill_check(self, handler, gateway, scheduler):
        gateway.place_order.return_value = make_order(id="o-2", symbol="TSLA", order_type="limit")

        result = await handler.submit(
            "user-1",
            OrderIntent(symbol="TSLA", quantity=5, side="buy", order_type="limit", limit_price=240.0),
        )

        assert result.trade.entry_price == 240.0
        scheduler.assert_not_called()

    @pytest.mark.asyncio
    async def test_synchronous_fill_uses_fill_price(self, handler, gateway):
        gateway.place_order.return_value = make_order(
            id="o-3", symbol="TSLA", status="filled", filled_avg_price=251.25,
        )

        result = await handler.submit("user-1", OrderIntent(symbol="TSLA", quantity=1, side="buy"))

        assert result.trade.entry_price == 251.25
        assert result.trade.status == "pending"

    @pytest.mark.asyncio
    async def test_rejection_propagates_and_records_nothing(self, handler, gateway, ledger, scheduler):
        gateway.place_order.side_effect = OrderRejected("insufficient buying power", status_code=403)

        with pytest.raises(OrderRejected) as exc_info:
            await handler.submit("user-1", OrderIntent(symbol="TSLA", quantity=10_000, side="buy"))

        assert exc_info.value.reason == "insufficient buying power"
        assert ledger.records == []
        scheduler.assert_not_called()
        gateway.place_order.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_scheduler_failure_does_not_fail_submission(self, handler, gateway, scheduler):
        gateway.place_order.return_value = make_order(id="o-4", symbol="TSLA")
        scheduler.side_effect = ConnectionError("redis down")

        result = await handler.submit("user-1", OrderIntent(symbol="TSLA", quantity=1, side="buy"))

        assert result.trade.status == "pending"


class TestFillCheck:
    @pytest.mark.asyncio
    async def test_filled_order_round_trip(self, handler, gateway, ledger):
        gateway.place_order.return_value = make_order(id="o-10", symbol="TSLA")
        await handler.submit("user-1", OrderIntent(symbol="TSLA", quantity=10, side="buy"))

        gateway.get_order.return_value = make_order(
            id="o-10", symbol="TSLA", status="filled", filled_avg_price=250.0,
        )
        assert await confirm_fill(gateway, ledger, "o-10") == "filled"

        trade = ledger.records[0]
        assert trade.status == "filled"
        assert trade.entry_price == 250.0
        assert trade.current_price == 250.0

    @pytest.mark.asyncio
    async def test_still_pending_leaves_record(self, gateway, ledger):
        await ledger.insert(TradeRecord(
            user_id="user-1", symbol="TSLA", side="buy", quantity=1,
            status="pending", broker_order_id="o-11",
        ))
        gateway.get_order.return_value = make_order(id="o-11", status="accepted")

        assert await confirm_fill(gateway, ledger, "o-11") == "pending"
        assert ledger.records[0].status == "pending"

    @pytest.mark.asyncio
    async def test_unknown_order_leaves_record(self, gateway, ledger):
        await ledger.insert(TradeRecord(
            user_id="user-1", symbol="TSLA", side="buy", quantity=1,
            status="pending", broker_order_id="o-12",
        ))
        gateway.get_order.side_effect = OrderNotFound("o-12")

        assert await confirm_fill(gateway, ledger, "o-12") == "not_found"
        assert ledger.records[0].status == "pending"

    @pytest.mark.asyncio
    async def test_cancelled_at_broker_marks_cancelled(self, gateway, ledger):
        await ledger.insert(TradeRecord(
            user_id="user-1", symbol="TSLA", side="buy", quantity=1,
            status="pending", broker_order_id="o-13",
        ))
        gateway.get_order.return_value = make_order(id="o-13", status="canceled")

        assert await confirm_fill(gateway, ledger, "o-13") == "cancelled"
        assert ledger.records[0].status == "cancelled"

    @pytest.mark.asyncio
    async def test_fill_check_never_reopens_terminal_record(self, gateway, ledger):
        await ledger.insert(TradeRecord(
            user_id="user-1", symbol="TSLA", side="buy", quantity=1,
            status="cancelled", broker_order_id="o-14",
        ))
        gateway.get_order.return_value = make_order(id="o-14", status="filled", filled_avg_price=10.0)

        await confirm_fill(gateway, ledger, "o-14")

        assert ledger.records[0].status == "cancelled"
        assert ledger.records[0].entry_price is None
