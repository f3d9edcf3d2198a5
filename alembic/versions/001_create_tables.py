"""Create initial tables: trade_records, risk_policies.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "trade_records",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("symbol", sa.String(20), nullable=False),
        sa.Column("side", sa.String(4), nullable=False),
        sa.Column("quantity", sa.Numeric(18, 6), nullable=False),
        sa.Column("entry_price", sa.Numeric(18, 6), nullable=True),
        sa.Column("current_price", sa.Numeric(18, 6), nullable=True),
        sa.Column("profit_loss_percentage", sa.Numeric(10, 4), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("broker_order_id", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('pending', 'filled', 'cancelled', 'failed')",
            name="ck_trade_records_status",
        ),
    )
    op.create_index(
        "ix_trade_records_user_symbol_status", "trade_records", ["user_id", "symbol", "status"]
    )
    op.create_index("ix_trade_records_broker_order_id", "trade_records", ["broker_order_id"])

    op.create_table(
        "risk_policies",
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("risk_tier", sa.String(20), nullable=False),
        sa.Column("profit_target_pct", sa.Numeric(6, 2), nullable=False),
        sa.Column("stop_loss_pct", sa.Numeric(6, 2), nullable=False),
        sa.Column("stop_loss_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("automated_trading_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )


def downgrade() -> None:
    op.drop_table("risk_policies")
    op.drop_index("ix_trade_records_broker_order_id", table_name="trade_records")
    op.drop_index("ix_trade_records_user_symbol_status", table_name="trade_records")
    op.drop_table("trade_records")
