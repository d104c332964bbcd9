"""Activity stats and hourly balance snapshot tables.

Revision ID: 001_stats_tables
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_stats_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _stats_columns(period_column: str) -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column(period_column, sa.Integer(), nullable=False),
        sa.Column("period_start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("address", sa.String(32), nullable=False),
        sa.Column("asset", sa.String(44), nullable=True),
        sa.Column("amount_in", sa.BigInteger(), nullable=False),
        sa.Column("amount_out", sa.BigInteger(), nullable=False),
        sa.Column("usd_amount_in", sa.Float(), nullable=True),
        sa.Column("usd_amount_out", sa.Float(), nullable=True),
        sa.Column("triggers_count", sa.Integer(), nullable=False),
        sa.Column("bounced_count", sa.Integer(), nullable=False),
        sa.Column("num_users", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    ]


_SQLITE_UNIQUE_ASSET_INDEXES = [
    ("uq_aa_stats_hourly_period_sqlite", "aa_stats_hourly", "hour"),
    ("uq_aa_stats_daily_period_sqlite", "aa_stats_daily", "day"),
    ("uq_aa_balances_hourly_sqlite", "aa_balances_hourly", "hour"),
]


def _is_sqlite() -> bool:
    return op.get_bind().dialect.name == "sqlite"


def upgrade() -> None:
    op.create_table(
        "aa_stats_hourly",
        *_stats_columns("hour"),
        sa.UniqueConstraint(
            "hour",
            "address",
            "asset",
            name="uq_aa_stats_hourly_period",
            postgresql_nulls_not_distinct=True,
        ),
    )
    op.create_index("aaStatsByHour", "aa_stats_hourly", ["hour"])
    op.create_index("aaStatsHourlyByAddress", "aa_stats_hourly", ["address", "hour"])

    op.create_table(
        "aa_stats_daily",
        *_stats_columns("day"),
        sa.UniqueConstraint(
            "day",
            "address",
            "asset",
            name="uq_aa_stats_daily_period",
            postgresql_nulls_not_distinct=True,
        ),
    )
    op.create_index("aaStatsByDay", "aa_stats_daily", ["day"])
    op.create_index("aaStatsDailyByAddress", "aa_stats_daily", ["address", "day"])

    op.create_table(
        "aa_balances_hourly",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("hour", sa.Integer(), nullable=False),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("address", sa.String(32), nullable=False),
        sa.Column("asset", sa.String(44), nullable=True),
        sa.Column("balance", sa.BigInteger(), nullable=False),
        sa.Column("usd_balance", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "hour",
            "address",
            "asset",
            name="uq_aa_balances_hourly",
            postgresql_nulls_not_distinct=True,
        ),
    )
    op.create_index("aaBalancesByHour", "aa_balances_hourly", ["hour"])

    # SQLite treats NULL assets as distinct in the constraints above.
    if _is_sqlite():
        for name, table, period_column in _SQLITE_UNIQUE_ASSET_INDEXES:
            op.create_index(
                name,
                table,
                [period_column, "address", sa.text("coalesce(asset, '')")],
                unique=True,
            )


def downgrade() -> None:
    if _is_sqlite():
        for name, table, _ in _SQLITE_UNIQUE_ASSET_INDEXES:
            op.drop_index(name, table_name=table)
    op.drop_index("aaBalancesByHour", table_name="aa_balances_hourly")
    op.drop_table("aa_balances_hourly")
    op.drop_index("aaStatsDailyByAddress", table_name="aa_stats_daily")
    op.drop_index("aaStatsByDay", table_name="aa_stats_daily")
    op.drop_table("aa_stats_daily")
    op.drop_index("aaStatsHourlyByAddress", table_name="aa_stats_hourly")
    op.drop_index("aaStatsByHour", table_name="aa_stats_hourly")
    op.drop_table("aa_stats_hourly")
