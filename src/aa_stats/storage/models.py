"""SQLAlchemy models for persistent storage.

Two declarative bases are defined here:

- ``LedgerBase`` maps the upstream ledger tables the aggregator reads
  (responses, units, outputs, assets, balances). They are owned by the
  ledger node and are never created or migrated by this service.
- ``Base`` maps the summary tables this service writes: hourly and daily
  activity stats and the hourly balance snapshots.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    Float,
    Index,
    Integer,
    SmallInteger,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

BASE_ASSET_SENTINEL = "base"


class LedgerBase(DeclarativeBase):
    """Base class for the read-only upstream ledger tables."""

    pass


class Base(DeclarativeBase):
    """Base class for all tables owned by the aggregator."""

    pass


# ============================================================================
# Upstream ledger (read-only)
# ============================================================================


class AAResponseModel(LedgerBase):
    """One execution of an autonomous agent in response to a trigger."""

    __tablename__ = "aa_responses"

    aa_response_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mci: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trigger_address: Mapped[str] = mapped_column(String(32), nullable=False)
    aa_address: Mapped[str] = mapped_column(String(32), nullable=False)
    trigger_unit: Mapped[str] = mapped_column(String(44), nullable=False)
    bounced: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    response_unit: Mapped[str | None] = mapped_column(String(44), nullable=True)
    response: Mapped[str | None] = mapped_column(Text, nullable=True)
    creation_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("byResponseUnit", "response_unit"),
        Index("aaResponsesByAddress", "aa_address"),
    )


class UnitModel(LedgerBase):
    __tablename__ = "units"

    unit: Mapped[str] = mapped_column(String(44), primary_key=True)
    timestamp: Mapped[int] = mapped_column(Integer, nullable=False)


class UnitAuthorModel(LedgerBase):
    __tablename__ = "unit_authors"

    unit: Mapped[str] = mapped_column(String(44), primary_key=True)
    address: Mapped[str] = mapped_column(String(32), primary_key=True)


class OutputModel(LedgerBase):
    """A payment output; a null asset is the base currency."""

    __tablename__ = "outputs"

    output_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    unit: Mapped[str] = mapped_column(String(44), nullable=False)
    message_index: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    output_index: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    address: Mapped[str] = mapped_column(String(32), nullable=False)
    asset: Mapped[str | None] = mapped_column(String(44), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (Index("outputsByUnit", "unit"),)


class AssetModel(LedgerBase):
    """Asset definition; the asset id is the unit that defined it."""

    __tablename__ = "assets"

    unit: Mapped[str] = mapped_column(String(44), primary_key=True)
    cap: Mapped[int | None] = mapped_column(BigInteger, nullable=True)


class AssetMetadataModel(LedgerBase):
    """Registry-provided display metadata of an asset."""

    __tablename__ = "asset_metadata"

    asset: Mapped[str] = mapped_column(String(44), primary_key=True)
    metadata_unit: Mapped[str | None] = mapped_column(String(44), nullable=True)
    registry_address: Mapped[str | None] = mapped_column(String(32), nullable=True)
    suffix: Mapped[str | None] = mapped_column(String(20), nullable=True)
    name: Mapped[str | None] = mapped_column(String(30), nullable=True)
    decimals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class AABalanceModel(LedgerBase):
    """Live balance of an autonomous agent; asset is ``'base'`` for the base currency."""

    __tablename__ = "aa_balances"

    address: Mapped[str] = mapped_column(String(32), primary_key=True)
    asset: Mapped[str] = mapped_column(String(44), primary_key=True)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False)


# ============================================================================
# Aggregated statistics (owned)
# ============================================================================


class _StatsColumns:
    """Columns shared by the hourly and daily activity tables."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    period_start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    address: Mapped[str] = mapped_column(String(32), nullable=False)
    asset: Mapped[str | None] = mapped_column(String(44), nullable=True)
    amount_in: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    amount_out: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    usd_amount_in: Mapped[float | None] = mapped_column(Float, nullable=True)
    usd_amount_out: Mapped[float | None] = mapped_column(Float, nullable=True)
    triggers_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bounced_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    num_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class AAStatsHourlyModel(_StatsColumns, Base):
    """Per-hour activity of an address in one asset. Rows are immutable."""

    __tablename__ = "aa_stats_hourly"

    period: Mapped[int] = mapped_column("hour", Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "hour",
            "address",
            "asset",
            name="uq_aa_stats_hourly_period",
            postgresql_nulls_not_distinct=True,
        ),
        Index("aaStatsByHour", "hour"),
        Index("aaStatsHourlyByAddress", "address", "hour"),
    )


class AAStatsDailyModel(_StatsColumns, Base):
    """Per-day activity of an address in one asset. Rows are immutable."""

    __tablename__ = "aa_stats_daily"

    period: Mapped[int] = mapped_column("day", Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "day",
            "address",
            "asset",
            name="uq_aa_stats_daily_period",
            postgresql_nulls_not_distinct=True,
        ),
        Index("aaStatsByDay", "day"),
        Index("aaStatsDailyByAddress", "address", "day"),
    )


StatsModel = type[AAStatsHourlyModel] | type[AAStatsDailyModel]

STATS_TABLES: dict[int, StatsModel] = {
    60: AAStatsHourlyModel,
    60 * 24: AAStatsDailyModel,
}


class AABalanceHourlyModel(Base):
    """Hourly snapshot of a live balance. At most one row per hour/address/asset."""

    __tablename__ = "aa_balances_hourly"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hour: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    address: Mapped[str] = mapped_column(String(32), nullable=False)
    asset: Mapped[str | None] = mapped_column(String(44), nullable=True)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    usd_balance: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint(
            "hour",
            "address",
            "asset",
            name="uq_aa_balances_hourly",
            postgresql_nulls_not_distinct=True,
        ),
        Index("aaBalancesByHour", "hour"),
    )


def _sqlite_unique_asset_index(table: Table, period_column: str, name: str) -> Index:
    """Unique ``(period, address, asset)`` index where a NULL asset collides.

    SQLite has no NULLS NOT DISTINCT, so the base currency is keyed as ''.
    """
    return Index(
        name,
        table.c[period_column],
        table.c.address,
        func.coalesce(table.c.asset, ""),
        unique=True,
    ).ddl_if(dialect="sqlite")


_sqlite_unique_asset_index(AAStatsHourlyModel.__table__, "hour", "uq_aa_stats_hourly_period_sqlite")
_sqlite_unique_asset_index(AAStatsDailyModel.__table__, "day", "uq_aa_stats_daily_period_sqlite")
_sqlite_unique_asset_index(AABalanceHourlyModel.__table__, "hour", "uq_aa_balances_hourly_sqlite")
