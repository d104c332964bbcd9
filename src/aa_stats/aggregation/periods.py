"""Incremental aggregation of agent responses into period stats tables.

For a period length (60 minutes for ``aa_stats_hourly``, 1440 for
``aa_stats_daily``) the aggregator reads every response newer than the stored
watermark, groups inflows and outflows by ``(period, address, asset)`` and
writes the rows of each period once a later period has been observed. The
most recent period in a pass is always left open: the next pass re-reads its
responses (they are above the watermark) together with any new ones.

Each closed period is written in its own transaction, and the watermark is
advanced only after that transaction commits, so a crash or error at any point
resumes from the last fully written period.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aa_stats.aggregation.assets import (
    AssetMetadataCache,
    AssetMetadataResolver,
    refresh_asset_metadata,
)
from aa_stats.aggregation.rates import DEFAULT_BASE_SYMBOL, get_usd_amount
from aa_stats.aggregation.watermark import WatermarkStore
from aa_stats.storage.models import STATS_TABLES, StatsModel
from aa_stats.storage.repos import FlowRowDTO, LedgerRepository, StatsRepository, StatsRowDTO

logger = logging.getLogger(__name__)

BucketKey = tuple[int, str, str | None]


class AggregationError(Exception):
    """Raised when a period cannot be aggregated."""


@dataclass
class PeriodBucket:
    """Merged inflow/outflow totals of one (period, address, asset) key."""

    period: int
    address: str
    asset: str | None
    last_response_id: int
    amount_in: int = 0
    amount_out: int = 0
    triggers_count: int = 0
    bounced_count: int = 0
    num_users: int = 0

    @property
    def key(self) -> BucketKey:
        return (self.period, self.address, self.asset)

    @classmethod
    def from_inflow(cls, row: FlowRowDTO) -> PeriodBucket:
        return cls(
            period=row.period,
            address=row.address,
            asset=row.asset,
            last_response_id=row.last_response_id,
            amount_in=row.amount,
            triggers_count=row.triggers_count,
            bounced_count=row.bounced_count,
            num_users=row.num_users,
        )

    @classmethod
    def from_outflow(cls, row: FlowRowDTO) -> PeriodBucket:
        return cls(
            period=row.period,
            address=row.address,
            asset=row.asset,
            last_response_id=row.last_response_id,
            amount_out=row.amount,
            triggers_count=row.triggers_count,
            bounced_count=row.bounced_count,
            num_users=row.num_users,
        )


@dataclass(frozen=True)
class AggregationResult:
    period_minutes: int
    periods_closed: int
    rows_written: int
    watermark: int


def merge_flows(inflows: list[FlowRowDTO], outflows: list[FlowRowDTO]) -> list[PeriodBucket]:
    """Merge inflow and outflow rows into one bucket per key, sorted by period.

    When both sides have a key, the outflow contributes ``amount_out`` and can
    raise ``last_response_id``; the counts of the inflow side are kept.
    """
    buckets: dict[BucketKey, PeriodBucket] = {}
    for row in inflows:
        bucket = PeriodBucket.from_inflow(row)
        buckets[bucket.key] = bucket
    for row in outflows:
        key: BucketKey = (row.period, row.address, row.asset)
        existing = buckets.get(key)
        if existing is None:
            buckets[key] = PeriodBucket.from_outflow(row)
            continue
        existing.amount_out = row.amount
        existing.last_response_id = max(existing.last_response_id, row.last_response_id)
    # sorted() is stable: ties keep insertion order.
    return sorted(buckets.values(), key=lambda b: b.period)


class PeriodAggregator:
    """Folds new agent responses into the stats table of each period length.

    Example:
        ```python
        aggregator = PeriodAggregator(
            session_factory=db.session_factory,
            watermarks=WatermarkStore(redis),
            assets=cache,
            resolver=LedgerAssetMetadataResolver(db.session_factory),
            rates=rates,
        )
        await aggregator.aggregate(60)
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        watermarks: WatermarkStore,
        assets: AssetMetadataCache,
        resolver: AssetMetadataResolver,
        rates: Mapping[str, float],
        *,
        tables: Mapping[int, StatsModel] | None = None,
        base_symbol: str = DEFAULT_BASE_SYMBOL,
    ) -> None:
        self._session_factory = session_factory
        self._watermarks = watermarks
        self._assets = assets
        self._resolver = resolver
        self._rates = rates
        self._tables = dict(tables if tables is not None else STATS_TABLES)
        self._base_symbol = base_symbol
        self._locks: dict[int, asyncio.Lock] = {}

    def is_running(self, period_minutes: int) -> bool:
        lock = self._locks.get(period_minutes)
        return lock is not None and lock.locked()

    async def aggregate(self, period_minutes: int) -> AggregationResult | None:
        """Aggregate all closed periods of one length.

        Returns:
            The pass summary, or None if a pass for the same period length
            was already in progress (the call is dropped, not queued).

        Raises:
            ValueError: If no stats table exists for the period length.
            AggregationError: If writing a closed period fails.
            Periods closed before an error stay committed with their
            watermark. Redis and resolver errors propagate unchanged.
        """
        model = self._tables.get(period_minutes)
        if model is None:
            raise ValueError(f"No stats table for a period of {period_minutes} minutes")

        lock = self._locks.setdefault(period_minutes, asyncio.Lock())
        if lock.locked():
            logger.debug("Aggregation of %d minutes already in progress, skipping", period_minutes)
            return None

        async with lock:
            return await self._aggregate(period_minutes, model)

    async def reset(self, period_minutes: int) -> int:
        """Delete the stats of one period length and rewind its watermark to 0.

        Rows are deleted in one transaction before the watermark is rewound,
        under the same lock as ``aggregate``. The next pass rebuilds the table
        from the start of the ledger.

        Returns:
            The number of stats rows deleted.
        """
        model = self._tables.get(period_minutes)
        if model is None:
            raise ValueError(f"No stats table for a period of {period_minutes} minutes")

        lock = self._locks.setdefault(period_minutes, asyncio.Lock())
        async with lock:
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        deleted = await StatsRepository(session, model).delete_all()
            except SQLAlchemyError as e:
                raise AggregationError(f"Failed to clear stats of {period_minutes} minutes: {e}") from e
            await self._watermarks.reset(period_minutes)

        logger.warning("Deleted %d stats rows of %d minutes for a rebuild", deleted, period_minutes)
        return deleted

    async def _aggregate(self, period_minutes: int, model: StatsModel) -> AggregationResult:
        period_seconds = period_minutes * 60
        watermark = await self._watermarks.get(period_minutes) or 0
        logger.debug("Aggregating %d minutes after response id %d", period_minutes, watermark)

        # Inflows attach to the trigger unit and outflows to the response unit,
        # so they are read with two separately grouped queries.
        async with self._session_factory() as session:
            ledger = LedgerRepository(session)
            inflows = await ledger.list_flows("in", period_seconds=period_seconds, after_response_id=watermark)
            outflows = await ledger.list_flows("out", period_seconds=period_seconds, after_response_id=watermark)

        buckets = merge_flows(inflows, outflows)
        if not buckets:
            return AggregationResult(period_minutes, periods_closed=0, rows_written=0, watermark=watermark)

        missing = self._assets.missing(b.asset for b in buckets)
        if missing:
            await refresh_asset_metadata(self._assets, self._resolver, missing)

        last_response_id = watermark
        committed = watermark
        current_period: int | None = None
        pending: list[PeriodBucket] = []
        periods_closed = 0
        rows_written = 0

        for bucket in buckets:
            if current_period is not None and bucket.period > current_period:
                rows_written += await self._close_period(model, period_minutes, current_period, pending)
                await self._watermarks.put(period_minutes, last_response_id)
                committed = last_response_id
                periods_closed += 1
                logger.info(
                    "Aggregated %d minutes: period %d, last response id %d",
                    period_minutes,
                    current_period,
                    last_response_id,
                )
                pending = []
            current_period = bucket.period
            last_response_id = max(last_response_id, bucket.last_response_id)
            pending.append(bucket)

        logger.debug(
            "Period %s of %d minutes left open with %d rows",
            current_period,
            period_minutes,
            len(pending),
        )
        return AggregationResult(
            period_minutes,
            periods_closed=periods_closed,
            rows_written=rows_written,
            watermark=committed,
        )

    async def _close_period(
        self,
        model: StatsModel,
        period_minutes: int,
        period: int,
        buckets: list[PeriodBucket],
    ) -> int:
        """Write all rows of one period in a single transaction."""
        period_start = datetime.fromtimestamp(period * period_minutes * 60, tz=UTC)
        rows = [
            StatsRowDTO(
                period=period,
                period_start_date=period_start,
                address=b.address,
                asset=b.asset,
                amount_in=b.amount_in,
                amount_out=b.amount_out,
                usd_amount_in=self._usd(b.asset, b.amount_in),
                usd_amount_out=self._usd(b.asset, b.amount_out),
                triggers_count=b.triggers_count,
                bounced_count=b.bounced_count,
                num_users=b.num_users,
            )
            for b in buckets
        ]
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    written = await StatsRepository(session, model).insert_many(rows)
        except SQLAlchemyError as e:
            raise AggregationError(
                f"Failed to write period {period} of {period_minutes} minutes: {e}"
            ) from e
        return written

    def _usd(self, asset: str | None, amount: int) -> float | None:
        return get_usd_amount(
            asset,
            amount,
            rates=self._rates,
            assets=self._assets,
            base_symbol=self._base_symbol,
        )
