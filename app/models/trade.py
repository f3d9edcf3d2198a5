"""Trade ledger model."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base

ORDER_STATUSES = ("pending", "filled", "cancelled", "failed")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TradeRecord(Base):
    """Append-only record of every order placed or observed for a user.

    Joined to broker positions by (user_id, symbol) at read time; there is no
    foreign key to the broker's own bookkeeping.
    """

    __tablename__ = "trade_records"
    __table_args__ = (
        Index("ix_trade_records_user_symbol_status", "user_id", "symbol", "status"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    side: Mapped[str] = mapped_column(String(4), nullable=False)  # buy, sell
    quantity: Mapped[float] = mapped_column(Numeric(18, 6, asdecimal=False), nullable=False)
    entry_price: Mapped[float | None] = mapped_column(Numeric(18, 6, asdecimal=False), nullable=True)
    current_price: Mapped[float | None] = mapped_column(Numeric(18, 6, asdecimal=False), nullable=True)
    profit_loss_percentage: Mapped[float | None] = mapped_column(
        Numeric(10, 4, asdecimal=False), nullable=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    broker_order_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "symbol": self.symbol,
            "side": self.side,
            "quantity": self.quantity,
            "entry_price": self.entry_price,
            "current_price": self.current_price,
            "profit_loss_percentage": self.profit_loss_percentage,
            "status": self.status,
            "broker_order_id": self.broker_order_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
