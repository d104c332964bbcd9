"""Repository pattern implementations for data access.

This module provides data access for the upstream ledger tables (read-only)
and for the activity stats and balance snapshot tables the aggregator owns.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal

from sqlalchemy import Integer, and_, case, delete, distinct, func, insert, literal_column, select
from sqlalchemy.orm import aliased

from aa_stats.storage.models import (
    AABalanceHourlyModel,
    AABalanceModel,
    AAResponseModel,
    AssetMetadataModel,
    AssetModel,
    OutputModel,
    StatsModel,
    UnitAuthorModel,
    UnitModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.orm import InstrumentedAttribute

logger = logging.getLogger(__name__)

FlowDirection = Literal["in", "out"]
TopMetric = Literal["usd_amount_in", "usd_amount_out", "triggers_count", "num_users"]
TOP_METRICS: tuple[str, ...] = ("usd_amount_in", "usd_amount_out", "triggers_count", "num_users")


def _asset_clause(column: InstrumentedAttribute[Any], asset: str | None) -> Any:
    return column.is_(None) if asset is None else column == asset


# ============================================================================
# Ledger (read-only)
# ============================================================================


@dataclass(frozen=True)
class FlowRowDTO:
    """One grouped row of the inflow or outflow query."""

    period: int
    address: str
    asset: str | None
    last_response_id: int
    amount: int
    triggers_count: int
    bounced_count: int
    num_users: int


@dataclass(frozen=True)
class LiveBalanceDTO:
    address: str
    asset: str
    balance: int


@dataclass(frozen=True)
class AssetInfoDTO:
    """Issuance facts of an asset needed to spot self-minted balances."""

    asset: str
    cap: int | None
    definer_address: str | None


@dataclass(frozen=True)
class AssetMetadataDTO:
    asset: str
    name: str | None
    decimals: int


class LedgerRepository:
    """Read-only queries against the upstream ledger tables."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_flows(
        self,
        direction: FlowDirection,
        *,
        period_seconds: int,
        after_response_id: int,
    ) -> list[FlowRowDTO]:
        """Group responses newer than ``after_response_id`` by period, address and asset.

        ``direction="in"`` sums the outputs of the trigger unit paid to the
        agent itself; ``direction="out"`` sums the outputs of the response
        unit paid to anyone other than the agent.
        """
        if period_seconds <= 0:
            raise ValueError("period_seconds must be positive")

        flows = aliased(OutputModel)
        response = AAResponseModel
        # Inline the divisor so the grouped and selected expressions are identical.
        bucket = UnitModel.timestamp // literal_column(str(int(period_seconds)), Integer())

        if direction == "in":
            flow_join = and_(
                flows.unit == response.trigger_unit,
                flows.address == response.aa_address,
            )
        elif direction == "out":
            flow_join = and_(
                flows.unit == response.response_unit,
                flows.address != response.aa_address,
            )
        else:
            raise ValueError(f"Unknown flow direction: {direction}")

        stmt = (
            select(
                func.max(response.aa_response_id).label("last_response_id"),
                bucket.label("period"),
                response.aa_address.label("address"),
                flows.asset.label("asset"),
                func.sum(flows.amount).label("amount"),
                # Counted per distinct response, not per joined output row: a
                # trigger paying the agent several outputs of one asset is one
                # trigger (and at most one bounce).
                func.count(distinct(response.aa_response_id)).label("triggers_count"),
                func.count(
                    distinct(case((response.bounced == 1, response.aa_response_id)))
                ).label("bounced_count"),
                func.count(distinct(response.trigger_address)).label("num_users"),
            )
            .select_from(response)
            .join(UnitModel, UnitModel.unit == response.trigger_unit)
            .join(flows, flow_join)
            .where(response.aa_response_id > after_response_id)
            .group_by(bucket, response.aa_address, flows.asset)
            .order_by(bucket)
        )
        result = await self.session.execute(stmt)
        return [
            FlowRowDTO(
                period=int(row.period),
                address=row.address,
                asset=row.asset,
                last_response_id=int(row.last_response_id),
                amount=int(row.amount or 0),
                triggers_count=int(row.triggers_count),
                bounced_count=int(row.bounced_count or 0),
                num_users=int(row.num_users),
            )
            for row in result
        ]

    async def list_live_balances(self) -> list[LiveBalanceDTO]:
        result = await self.session.execute(
            select(AABalanceModel.address, AABalanceModel.asset, AABalanceModel.balance)
        )
        return [LiveBalanceDTO(address=r.address, asset=r.asset, balance=int(r.balance)) for r in result]

    async def get_asset_infos(self, assets: Iterable[str]) -> dict[str, AssetInfoDTO]:
        """Read cap and definer address of the given assets in one query."""
        wanted = sorted(set(assets))
        if not wanted:
            return {}
        stmt = (
            select(AssetModel.unit, AssetModel.cap, UnitAuthorModel.address)
            .outerjoin(UnitAuthorModel, UnitAuthorModel.unit == AssetModel.unit)
            .where(AssetModel.unit.in_(wanted))
        )
        result = await self.session.execute(stmt)
        infos: dict[str, AssetInfoDTO] = {}
        for unit, cap, definer in result:
            # Multi-authored definitions keep the first author seen.
            infos.setdefault(unit, AssetInfoDTO(asset=unit, cap=cap, definer_address=definer))
        return infos

    async def list_asset_metadata(self, assets: Iterable[str] | None = None) -> list[AssetMetadataDTO]:
        """Read registry metadata; ``None`` reads every registered asset."""
        stmt = select(AssetMetadataModel.asset, AssetMetadataModel.name, AssetMetadataModel.decimals)
        if assets is not None:
            wanted = sorted(set(assets))
            if not wanted:
                return []
            stmt = stmt.where(AssetMetadataModel.asset.in_(wanted))
        result = await self.session.execute(stmt)
        return [
            AssetMetadataDTO(asset=r.asset, name=r.name, decimals=int(r.decimals or 0)) for r in result
        ]


# ============================================================================
# Activity stats
# ============================================================================


@dataclass
class StatsRowDTO:
    """Data transfer object for one closed period of one address/asset."""

    period: int
    period_start_date: datetime
    address: str
    asset: str | None
    amount_in: int
    amount_out: int
    usd_amount_in: float | None
    usd_amount_out: float | None
    triggers_count: int
    bounced_count: int
    num_users: int

    @classmethod
    def from_model(cls, model: Any) -> StatsRowDTO:
        return cls(
            period=model.period,
            period_start_date=model.period_start_date,
            address=model.address,
            asset=model.asset,
            amount_in=model.amount_in,
            amount_out=model.amount_out,
            usd_amount_in=model.usd_amount_in,
            usd_amount_out=model.usd_amount_out,
            triggers_count=model.triggers_count,
            bounced_count=model.bounced_count,
            num_users=model.num_users,
        )


class StatsRepository:
    """Repository for one of the period stats tables (hourly or daily)."""

    def __init__(self, session: AsyncSession, model: StatsModel) -> None:
        self.session = session
        self.model = model

    async def insert_many(self, rows: list[StatsRowDTO]) -> int:
        """Insert closed-period rows. Duplicates violate the unique key and raise."""
        if not rows:
            return 0
        self.session.add_all(
            [
                self.model(
                    period=row.period,
                    period_start_date=row.period_start_date,
                    address=row.address,
                    asset=row.asset,
                    amount_in=row.amount_in,
                    amount_out=row.amount_out,
                    usd_amount_in=row.usd_amount_in,
                    usd_amount_out=row.usd_amount_out,
                    triggers_count=row.triggers_count,
                    bounced_count=row.bounced_count,
                    num_users=row.num_users,
                )
                for row in rows
            ]
        )
        await self.session.flush()
        return len(rows)

    async def delete_all(self) -> int:
        """Delete every row of the table, returning the number deleted."""
        result = await self.session.execute(delete(self.model))
        return result.rowcount or 0

    async def list_all(self) -> list[StatsRowDTO]:
        m = self.model
        result = await self.session.execute(select(m).order_by(m.period, m.address, m.asset))
        return [StatsRowDTO.from_model(model) for model in result.scalars().all()]

    async def list_for_address(
        self,
        address: str,
        *,
        period_from: int,
        period_to: int,
        by_asset: bool = False,
        asset: str | None = None,
    ) -> list[dict[str, Any]]:
        m = self.model
        stmt = select(
            m.period.label("period"),
            m.address,
            m.asset,
            m.amount_in,
            m.amount_out,
            m.usd_amount_in,
            m.usd_amount_out,
            m.triggers_count,
            m.bounced_count,
            m.num_users,
        ).where(m.address == address, m.period.between(period_from, period_to))
        if by_asset:
            stmt = stmt.where(_asset_clause(m.asset, asset))
        result = await self.session.execute(stmt.order_by(m.period))
        return [dict(r) for r in result.mappings().all()]

    async def total_activity(
        self,
        *,
        period_from: int,
        period_to: int,
        by_asset: bool = False,
        asset: str | None = None,
    ) -> list[dict[str, Any]]:
        """Activity of all addresses summed per period."""
        m = self.model
        columns: list[Any] = [m.period.label("period")]
        if by_asset:
            columns += [
                func.sum(m.amount_in).label("amount_in"),
                func.sum(m.amount_out).label("amount_out"),
            ]
        columns += [
            func.sum(m.usd_amount_in).label("usd_amount_in"),
            func.sum(m.usd_amount_out).label("usd_amount_out"),
            func.sum(m.triggers_count).label("triggers_count"),
            func.sum(m.bounced_count).label("bounced_count"),
            func.sum(m.num_users).label("num_users"),
        ]
        stmt = select(*columns).where(m.period.between(period_from, period_to))
        if by_asset:
            stmt = stmt.where(_asset_clause(m.asset, asset))
        stmt = stmt.group_by(m.period).order_by(m.period)
        result = await self.session.execute(stmt)
        return [dict(r) for r in result.mappings().all()]

    async def top_addresses(
        self,
        metric: TopMetric,
        *,
        period_from: int,
        period_to: int,
        limit: int,
        by_asset: bool = False,
        asset: str | None = None,
    ) -> list[dict[str, Any]]:
        """Addresses ranked by a summed metric over a period range."""
        if metric not in TOP_METRICS:
            raise ValueError(f"Unknown metric: {metric}")
        m = self.model
        columns: list[Any] = [m.address]
        if by_asset:
            columns += [
                func.sum(m.amount_in).label("amount_in"),
                func.sum(m.amount_out).label("amount_out"),
            ]
        sums = {
            "usd_amount_in": func.sum(m.usd_amount_in).label("usd_amount_in"),
            "usd_amount_out": func.sum(m.usd_amount_out).label("usd_amount_out"),
            "triggers_count": func.sum(m.triggers_count).label("triggers_count"),
            "bounced_count": func.sum(m.bounced_count).label("bounced_count"),
            "num_users": func.sum(m.num_users).label("num_users"),
        }
        columns += list(sums.values())
        stmt = select(*columns).where(m.period.between(period_from, period_to))
        if by_asset:
            stmt = stmt.where(_asset_clause(m.asset, asset))
        stmt = stmt.group_by(m.address).order_by(sums[metric].desc().nulls_last()).limit(limit)
        result = await self.session.execute(stmt)
        return [dict(r) for r in result.mappings().all()]

    async def top_assets_by_amount_in(self, *, period: int, limit: int) -> list[dict[str, Any]]:
        m = self.model
        total_usd = func.sum(m.usd_amount_in).label("total_usd_amount_in")
        stmt = (
            select(
                m.period.label("period"),
                m.asset,
                func.sum(m.amount_in).label("total_amount_in"),
                total_usd,
            )
            .where(m.period == period)
            .group_by(m.period, m.asset)
            .order_by(total_usd.desc().nulls_last())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [dict(r) for r in result.mappings().all()]


# ============================================================================
# Balance snapshots
# ============================================================================


@dataclass
class BalanceSnapshotDTO:
    hour: int
    date: datetime
    address: str
    asset: str | None
    balance: int
    usd_balance: float | None

    @classmethod
    def from_model(cls, model: AABalanceHourlyModel) -> BalanceSnapshotDTO:
        return cls(
            hour=model.hour,
            date=model.date,
            address=model.address,
            asset=model.asset,
            balance=model.balance,
            usd_balance=model.usd_balance,
        )


class BalanceSnapshotRepository:
    """Repository for hourly balance snapshots."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_last_hour(self) -> int:
        """Latest snapshotted hour, 0 when nothing was snapshotted yet."""
        result = await self.session.execute(select(func.max(AABalanceHourlyModel.hour)))
        return int(result.scalar_one_or_none() or 0)

    async def insert_many(self, rows: list[BalanceSnapshotDTO]) -> int:
        if not rows:
            return 0
        await self.session.execute(
            insert(AABalanceHourlyModel),
            [
                {
                    "hour": row.hour,
                    "date": row.date,
                    "address": row.address,
                    "asset": row.asset,
                    "balance": row.balance,
                    "usd_balance": row.usd_balance,
                }
                for row in rows
            ],
        )
        return len(rows)

    async def list_hour(self, hour: int) -> list[BalanceSnapshotDTO]:
        m = AABalanceHourlyModel
        result = await self.session.execute(select(m).where(m.hour == hour).order_by(m.address, m.asset))
        return [BalanceSnapshotDTO.from_model(model) for model in result.scalars().all()]

    async def list_for_address(
        self,
        address: str,
        *,
        hour_from: int,
        hour_to: int,
        by_asset: bool = False,
        asset: str | None = None,
    ) -> list[dict[str, Any]]:
        m = AABalanceHourlyModel
        stmt = select(
            m.hour.label("period"),
            m.address,
            m.asset,
            m.balance,
            m.usd_balance,
        ).where(m.address == address, m.hour.between(hour_from, hour_to))
        if by_asset:
            stmt = stmt.where(_asset_clause(m.asset, asset))
        result = await self.session.execute(stmt.order_by(m.hour))
        return [dict(r) for r in result.mappings().all()]

    async def total_tvl(
        self,
        *,
        hour_from: int,
        hour_to: int,
        by_asset: bool = False,
        asset: str | None = None,
    ) -> list[dict[str, Any]]:
        m = AABalanceHourlyModel
        columns: list[Any] = [m.hour.label("period")]
        if by_asset:
            columns.append(func.sum(m.balance).label("balance"))
        columns.append(func.sum(m.usd_balance).label("usd_balance"))
        stmt = select(*columns).where(m.hour.between(hour_from, hour_to))
        if by_asset:
            stmt = stmt.where(_asset_clause(m.asset, asset))
        stmt = stmt.group_by(m.hour).order_by(m.hour)
        result = await self.session.execute(stmt)
        return [dict(r) for r in result.mappings().all()]

    async def top_addresses_by_tvl(
        self,
        *,
        hour: int,
        limit: int,
        by_asset: bool = False,
        asset: str | None = None,
    ) -> list[dict[str, Any]]:
        m = AABalanceHourlyModel
        if by_asset:
            stmt = (
                select(m.hour.label("period"), m.address, m.balance, m.usd_balance)
                .where(m.hour == hour, _asset_clause(m.asset, asset))
                .order_by(m.usd_balance.desc().nulls_last())
            )
        else:
            usd_balance = func.sum(m.usd_balance).label("usd_balance")
            stmt = (
                select(m.hour.label("period"), m.address, usd_balance)
                .where(m.hour == hour)
                .group_by(m.hour, m.address)
                .order_by(usd_balance.desc().nulls_last())
            )
        result = await self.session.execute(stmt.limit(limit))
        return [dict(r) for r in result.mappings().all()]

    async def top_assets_by_tvl(self, *, hour: int, limit: int) -> list[dict[str, Any]]:
        m = AABalanceHourlyModel
        total_usd = func.sum(m.usd_balance).label("total_usd_balance")
        stmt = (
            select(
                m.hour.label("period"),
                m.asset,
                func.sum(m.balance).label("total_balance"),
                total_usd,
            )
            .where(m.hour == hour)
            .group_by(m.hour, m.asset)
            .order_by(total_usd.desc().nulls_last())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [dict(r) for r in result.mappings().all()]
