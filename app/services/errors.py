"""Error taxonomy for order submission and reconciliation.

Callers of the submission handler see every one of these. The reconciliation
engine catches them per symbol and keeps going.
"""


class TradingError(Exception):
    """Base class for all trading-core failures."""


class ValidationError(TradingError):
    """Bad order input. Raised before any network call."""


class GatewayUnavailable(TradingError):
    """Network failure or 5xx from the broker. Not retried internally."""


class OrderRejected(TradingError):
    """Broker refused the order. The raw reason is kept for display."""

    def __init__(self, reason: str, status_code: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class OrderNotFound(TradingError):
    """Broker no longer recognises the order id."""

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class PersistenceError(TradingError):
    """Ledger or policy store failure."""


class BrokerRequestError(TradingError):
    """Broker refused a non-order request (bad credentials, bad parameters).

    Not an outage: retrying the same request will fail the same way.
    """

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code
