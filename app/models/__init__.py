"""SQLAlchemy models for the trading ledger."""

from app.models.risk_policy import RiskPolicy
from app.models.trade import TradeRecord

__all__ = ["RiskPolicy", "TradeRecord"]
