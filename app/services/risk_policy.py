"""Risk policy store — one current exit policy row per user."""

import logging
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import async_session
from app.models.risk_policy import RiskPolicy
from app.services.errors import PersistenceError

logger = logging.getLogger(__name__)


class RiskTier(str, Enum):
    """Risk profile tiers offered in settings."""

    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class RiskPolicySettings(BaseModel):
    """Validated exit policy. Defaults match a user who never saved settings."""

    risk_tier: RiskTier = RiskTier.MODERATE
    profit_target_pct: float = Field(default=8.0, ge=1, le=50)
    stop_loss_pct: float = Field(default=2.0, ge=0.5, le=20)
    stop_loss_enabled: bool = False
    automated_trading_enabled: bool = False

    @classmethod
    def from_row(cls, row: RiskPolicy) -> "RiskPolicySettings":
        return cls(
            risk_tier=row.risk_tier,
            profit_target_pct=row.profit_target_pct,
            stop_loss_pct=row.stop_loss_pct,
            stop_loss_enabled=row.stop_loss_enabled,
            automated_trading_enabled=row.automated_trading_enabled,
        )


class RiskPolicyStore:
    """Keyed get / whole-row upsert of risk policies."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or async_session

    async def get(self, user_id: str) -> RiskPolicySettings | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(RiskPolicy, user_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load risk policy: {e}") from e
        return RiskPolicySettings.from_row(row) if row is not None else None

    async def save(self, user_id: str, policy: RiskPolicySettings) -> None:
        """Replace the user's policy wholesale. No merge, no history."""
        now = datetime.now(timezone.utc)
        values = {
            "risk_tier": policy.risk_tier.value,
            "profit_target_pct": policy.profit_target_pct,
            "stop_loss_pct": policy.stop_loss_pct,
            "stop_loss_enabled": policy.stop_loss_enabled,
            "automated_trading_enabled": policy.automated_trading_enabled,
            "updated_at": now,
        }
        stmt = insert(RiskPolicy).values(user_id=user_id, created_at=now, **values)
        stmt = stmt.on_conflict_do_update(index_elements=[RiskPolicy.user_id], set_=values)
        try:
            async with self._session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Risk policy save failed for %s: %s", user_id, e)
            raise PersistenceError(f"Failed to save risk policy: {e}") from e
        logger.info(
            "Risk policy saved for %s: tier=%s target=%.2f%% stop=%.2f%% (enabled=%s) auto=%s",
            user_id, policy.risk_tier.value, policy.profit_target_pct, policy.stop_loss_pct,
            policy.stop_loss_enabled, policy.automated_trading_enabled,
        )

    async def list_users(self, automated_only: bool = False) -> list[str]:
        """User ids with a saved policy, optionally only those with automation on."""
        stmt = select(RiskPolicy.user_id)
        if automated_only:
            stmt = stmt.where(RiskPolicy.automated_trading_enabled.is_(True))
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list policy users: {e}") from e
