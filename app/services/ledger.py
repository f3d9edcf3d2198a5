"""Trade ledger store — the system's own record of every order.

Rows are never deleted. Status moves only forward from pending: any update
that sets a status is restricted to rows that are still pending, so terminal
rows only ever receive price refreshes.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import async_session
from app.models.trade import ORDER_STATUSES, TradeRecord
from app.services.errors import PersistenceError

logger = logging.getLogger(__name__)

_FILTERABLE = frozenset({"id", "user_id", "symbol", "side", "status", "broker_order_id"})
_PATCHABLE = frozenset({
    "status", "entry_price", "current_price", "profit_loss_percentage", "broker_order_id",
})


class TradeLedger:
    """Insert / update-by-filter / list access to trade records."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or async_session

    async def insert(self, record: TradeRecord) -> TradeRecord:
        """Persist a new record and return it with generated fields populated."""
        try:
            async with self._session_factory() as session:
                session.add(record)
                await session.commit()
                await session.refresh(record)
        except SQLAlchemyError as e:
            logger.error("Ledger insert failed for %s %s: %s", record.side, record.symbol, e)
            raise PersistenceError(f"Failed to record trade: {e}") from e
        logger.info(
            "Ledger: %s %s x%s recorded as %s (order=%s)",
            record.side, record.symbol, record.quantity, record.status, record.broker_order_id,
        )
        return record

    async def update_where(self, patch: dict[str, Any], **filters: Any) -> int:
        """Apply ``patch`` to every row matching ``filters``. Returns rows changed."""
        if not filters:
            raise ValueError("update_where requires at least one filter")
        unknown = (set(filters) - _FILTERABLE) | (set(patch) - _PATCHABLE)
        if unknown:
            raise ValueError(f"Unsupported ledger fields: {sorted(unknown)}")
        if "status" in patch and patch["status"] not in ORDER_STATUSES:
            raise ValueError(f"Invalid status: {patch['status']}")

        stmt = update(TradeRecord).values(**patch, updated_at=datetime.now(timezone.utc))
        for column, value in filters.items():
            stmt = stmt.where(getattr(TradeRecord, column) == value)
        if "status" in patch:
            stmt = stmt.where(TradeRecord.status == "pending")
        stmt = stmt.execution_options(synchronize_session=False)

        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Ledger update failed (%s): %s", filters, e)
            raise PersistenceError(f"Failed to update trades: {e}") from e
        return result.rowcount

    async def list_recent(self, user_id: str, limit: int = 10) -> list[TradeRecord]:
        """Newest records first."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(TradeRecord)
                    .where(TradeRecord.user_id == user_id)
                    .order_by(TradeRecord.created_at.desc())
                    .limit(limit)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list trades: {e}") from e

    async def list_pending(self, user_id: str, side: str | None = None) -> list[TradeRecord]:
        """Pending records that carry a broker order id, oldest first."""
        stmt = select(TradeRecord).where(
            TradeRecord.user_id == user_id,
            TradeRecord.status == "pending",
            TradeRecord.broker_order_id.is_not(None),
        )
        if side is not None:
            stmt = stmt.where(TradeRecord.side == side)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt.order_by(TradeRecord.created_at.asc()))
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list pending trades: {e}") from e
