"""Per-user risk policy model. One current row per user, no history."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class RiskPolicy(Base):
    """Exit policy and automation switch for a single user."""

    __tablename__ = "risk_policies"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    risk_tier: Mapped[str] = mapped_column(String(20), nullable=False)  # conservative, moderate, aggressive
    profit_target_pct: Mapped[float] = mapped_column(Numeric(6, 2, asdecimal=False), nullable=False)
    stop_loss_pct: Mapped[float] = mapped_column(Numeric(6, 2, asdecimal=False), nullable=False)
    stop_loss_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    automated_trading_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
