"""Alpaca paper-trading gateway.

Thin typed wrapper over the Alpaca v2 REST API. Auth is two static secret
headers (APCA-API-KEY-ID / APCA-API-SECRET-KEY). Credentials are passed in
explicitly so a user can later be linked to their own brokerage account;
today every user resolves to the shared paper account from settings.
"""

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from app.config import settings
from app.services.errors import BrokerRequestError, GatewayUnavailable, OrderNotFound, OrderRejected

logger = logging.getLogger(__name__)

API_PREFIX = "/v2"

# Alpaca order status -> ledger status, for statuses that end the order
_TERMINAL_ORDER_STATUS = {
    "filled": "filled",
    "canceled": "cancelled",
    "expired": "cancelled",
    "done_for_day": "cancelled",
    "replaced": "cancelled",
    "rejected": "failed",
}


def _to_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


@dataclass(frozen=True)
class BrokerCredentials:
    """Key/secret pair for one brokerage account."""

    api_key: str
    secret_key: str
    base_url: str = "https://paper-api.alpaca.markets"


@dataclass
class BrokerOrder:
    """Order as reported by the broker."""

    id: str
    symbol: str
    side: str
    order_type: str
    quantity: float | None
    status: str
    filled_avg_price: float | None = None
    limit_price: float | None = None

    @classmethod
    def from_api(cls, data: dict) -> "BrokerOrder":
        return cls(
            id=data["id"],
            symbol=data.get("symbol", ""),
            side=data.get("side", ""),
            order_type=data.get("type") or data.get("order_type", ""),
            quantity=_to_float(data.get("qty")),
            status=data.get("status", ""),
            filled_avg_price=_to_float(data.get("filled_avg_price")),
            limit_price=_to_float(data.get("limit_price")),
        )

    @property
    def is_filled(self) -> bool:
        return self.status == "filled"

    @property
    def ledger_status(self) -> str | None:
        """Terminal ledger status for this order, or None while it is still live."""
        return _TERMINAL_ORDER_STATUS.get(self.status)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side,
            "type": self.order_type,
            "qty": self.quantity,
            "status": self.status,
            "filled_avg_price": self.filled_avg_price,
            "limit_price": self.limit_price,
        }


@dataclass
class BrokerPosition:
    """Live long holding. Recomputed on every refresh, never persisted."""

    symbol: str
    quantity: float
    avg_entry_price: float
    current_price: float
    unrealized_pl: float
    unrealized_plpc: float  # fraction, 0.09 == +9%

    @classmethod
    def from_api(cls, data: dict) -> "BrokerPosition":
        return cls(
            symbol=data["symbol"],
            quantity=float(data["qty"]),
            avg_entry_price=float(data["avg_entry_price"]),
            current_price=float(data["current_price"]),
            unrealized_pl=float(data.get("unrealized_pl") or 0),
            unrealized_plpc=float(data.get("unrealized_plpc") or 0),
        )

    @property
    def pl_pct(self) -> float:
        return self.unrealized_plpc * 100

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "qty": self.quantity,
            "avg_entry_price": self.avg_entry_price,
            "current_price": self.current_price,
            "unrealized_pl": self.unrealized_pl,
            "unrealized_plpc": self.unrealized_plpc,
        }


@dataclass
class Account:
    """Brokerage account snapshot."""

    id: str
    status: str
    currency: str
    cash: float
    buying_power: float
    portfolio_value: float
    equity: float

    @classmethod
    def from_api(cls, data: dict) -> "Account":
        return cls(
            id=data.get("id", ""),
            status=data.get("status", ""),
            currency=data.get("currency", "USD"),
            cash=float(data.get("cash") or 0),
            buying_power=float(data.get("buying_power") or 0),
            portfolio_value=float(data.get("portfolio_value") or 0),
            equity=float(data.get("equity") or 0),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "currency": self.currency,
            "cash": self.cash,
            "buying_power": self.buying_power,
            "portfolio_value": self.portfolio_value,
            "equity": self.equity,
        }


def resolve_credentials(user_id: str) -> BrokerCredentials:
    """Brokerage account to trade against for a user.

    Every user maps to the shared paper account until per-user linkage exists.
    """
    if not settings.alpaca_api_key or not settings.alpaca_secret_key:
        raise ValueError("ALPACA_API_KEY / ALPACA_SECRET_KEY not configured")
    return BrokerCredentials(
        api_key=settings.alpaca_api_key,
        secret_key=settings.alpaca_secret_key,
        base_url=settings.alpaca_base_url,
    )


class AlpacaGateway:
    """Low-level async client for the Alpaca trading REST API."""

    def __init__(
        self,
        credentials: BrokerCredentials,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=credentials.base_url.rstrip("/") + API_PREFIX,
            headers={
                "APCA-API-KEY-ID": credentials.api_key,
                "APCA-API-SECRET-KEY": credentials.secret_key,
            },
            timeout=timeout if timeout is not None else settings.broker_timeout_seconds,
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.error("Alpaca %s %s failed: %s", method, path, e)
            raise GatewayUnavailable(f"Broker unreachable: {e}") from e
        if resp.status_code >= 500:
            logger.error("Alpaca %s %s returned %d", method, path, resp.status_code)
            raise GatewayUnavailable(f"Broker error {resp.status_code}")
        return resp

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            return resp.json().get("message") or resp.text or "Unknown error"
        except ValueError:
            return resp.text or "Unknown error"

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.is_success:
            return
        # 5xx never reaches here; _request already raised GatewayUnavailable
        message = self._error_message(resp)
        logger.warning("Alpaca %s %s refused with %d: %s",
                       resp.request.method, resp.request.url.path, resp.status_code, message)
        raise BrokerRequestError(
            f"Broker returned {resp.status_code}: {message}", status_code=resp.status_code
        )

    async def list_open_orders(self, symbol: str) -> list[BrokerOrder]:
        """Open orders for a symbol. Empty list when there are none."""
        resp = await self._request(
            "GET", "/orders", params={"status": "open", "symbols": symbol}
        )
        self._raise_for_status(resp)
        return [BrokerOrder.from_api(o) for o in resp.json() or []]

    async def cancel_order(self, order_id: str) -> None:
        """Cancel a resting order."""
        resp = await self._request("DELETE", f"/orders/{order_id}")
        if resp.status_code == 404:
            raise OrderNotFound(order_id)
        self._raise_for_status(resp)
        logger.info("Alpaca order cancelled: %s", order_id)

    async def place_order(
        self,
        symbol: str,
        quantity: float,
        side: str,
        order_type: str = "market",
        limit_price: float | None = None,
    ) -> BrokerOrder:
        """Place an order. Limit orders are good-till-cancelled, market orders day."""
        body: dict[str, Any] = {
            "symbol": symbol,
            "qty": str(quantity),
            "side": side,
            "type": order_type,
            "time_in_force": "gtc" if order_type == "limit" else "day",
        }
        if order_type == "limit" and limit_price is not None:
            body["limit_price"] = str(limit_price)

        resp = await self._request("POST", "/orders", json=body)
        if not resp.is_success:
            reason = self._error_message(resp)
            logger.warning("Alpaca rejected order %s: %s", body, reason)
            raise OrderRejected(reason, status_code=resp.status_code)

        order = BrokerOrder.from_api(resp.json())
        logger.info("Alpaca order placed: %s (id=%s, status=%s)", body, order.id, order.status)
        return order

    async def get_order(self, order_id: str) -> BrokerOrder:
        """Look up one order by broker id."""
        resp = await self._request("GET", f"/orders/{order_id}")
        if resp.status_code == 404:
            raise OrderNotFound(order_id)
        self._raise_for_status(resp)
        return BrokerOrder.from_api(resp.json())

    async def list_positions(self) -> list[BrokerPosition]:
        """All open positions. May be a few seconds stale."""
        resp = await self._request("GET", "/positions")
        self._raise_for_status(resp)
        return [BrokerPosition.from_api(p) for p in resp.json() or []]

    async def get_account(self) -> Account:
        """Account balances snapshot."""
        resp = await self._request("GET", "/account")
        self._raise_for_status(resp)
        return Account.from_api(resp.json())

    async def close(self) -> None:
        await self._client.aclose()
