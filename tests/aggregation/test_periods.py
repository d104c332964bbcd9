"""Tests for the period aggregator."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest
from conftest import AA, AA2, ASSET1, ASSET2, HOUR, USER1, USER2

from aa_stats.aggregation.assets import AssetMetadata, AssetMetadataCache
from aa_stats.aggregation.periods import (
    AggregationError,
    PeriodAggregator,
    merge_flows,
)
from aa_stats.aggregation.watermark import WatermarkStore
from aa_stats.storage.models import AAStatsDailyModel, AAStatsHourlyModel
from aa_stats.storage.repos import FlowRowDTO, StatsRepository, StatsRowDTO


class StaticResolver:
    """Resolver returning fixed metadata and recording its calls."""

    def __init__(self, known: dict[str, AssetMetadata] | None = None) -> None:
        self.known = known or {}
        self.calls: list[list[str] | None] = []

    async def resolve(self, assets=None):
        self.calls.append(assets)
        if assets is None:
            return dict(self.known)
        return {a: self.known[a] for a in assets if a in self.known}


class BlockingResolver(StaticResolver):
    """Resolver that waits until released."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def resolve(self, assets=None):
        self.entered.set()
        await self.release.wait()
        return await super().resolve(assets)


@pytest.fixture
def watermarks(mock_redis) -> WatermarkStore:
    return WatermarkStore(mock_redis)


@pytest.fixture
def resolver() -> StaticResolver:
    return StaticResolver(
        {
            ASSET1: AssetMetadata(asset=ASSET1, name="USDX", decimals=2),
            ASSET2: AssetMetadata(asset=ASSET2, name="TOKEN", decimals=0),
        }
    )


@pytest.fixture
def aggregator(session_factory, watermarks, resolver, rates) -> PeriodAggregator:
    return PeriodAggregator(session_factory, watermarks, AssetMetadataCache(), resolver, rates)


async def _rows(session_factory, model=AAStatsHourlyModel) -> list[StatsRowDTO]:
    async with session_factory() as session:
        return await StatsRepository(session, model).list_all()


def _flow(period: int, asset: str | None, last_id: int, amount: int, **counts: int) -> FlowRowDTO:
    return FlowRowDTO(
        period=period,
        address=AA,
        asset=asset,
        last_response_id=last_id,
        amount=amount,
        triggers_count=counts.get("triggers", 1),
        bounced_count=counts.get("bounced", 0),
        num_users=counts.get("users", 1),
    )


# ============================================================================
# Merge
# ============================================================================


class TestMergeFlows:
    def test_inflow_only_has_zero_amount_out(self) -> None:
        [bucket] = merge_flows([_flow(100, None, 3, 500)], [])
        assert bucket.amount_in == 500
        assert bucket.amount_out == 0

    def test_outflow_only_has_zero_amount_in(self) -> None:
        [bucket] = merge_flows([], [_flow(100, ASSET1, 4, 80)])
        assert bucket.amount_in == 0
        assert bucket.amount_out == 80
        assert bucket.last_response_id == 4

    def test_both_sides_keep_inflow_counts_and_max_id(self) -> None:
        inflow = _flow(100, None, 3, 500, triggers=3, users=2)
        outflow = _flow(100, None, 5, 120, triggers=1, users=1)

        [bucket] = merge_flows([inflow], [outflow])

        assert bucket.amount_in == 500
        assert bucket.amount_out == 120
        assert bucket.last_response_id == 5
        assert bucket.triggers_count == 3
        assert bucket.num_users == 2

    def test_sorted_by_period(self) -> None:
        buckets = merge_flows(
            [_flow(102, None, 9, 1), _flow(100, None, 2, 1)],
            [_flow(101, ASSET1, 5, 1)],
        )
        assert [b.period for b in buckets] == [100, 101, 102]


# ============================================================================
# Aggregation
# ============================================================================


class TestAggregate:
    async def test_closes_completed_period_and_defers_tail(
        self, aggregator, ledger, session_factory, watermarks
    ) -> None:
        for response_id in (1, 2, 3):
            await ledger.add_response(response_id, timestamp=100 * HOUR + response_id * 60)
        for response_id in (4, 5):
            await ledger.add_response(response_id, timestamp=101 * HOUR + response_id * 60)

        result = await aggregator.aggregate(60)

        assert result is not None
        assert result.periods_closed == 1
        assert result.watermark == 3
        assert await watermarks.get(60) == 3
        rows = await _rows(session_factory)
        assert len(rows) == 1
        row = rows[0]
        assert row.period == 100
        assert row.address == AA
        assert row.asset is None
        assert row.amount_in == 30_000
        assert row.triggers_count == 3
        assert row.period_start_date.replace(tzinfo=None) == datetime(1970, 1, 5, 4, 0)

        await ledger.add_response(6, timestamp=102 * HOUR)
        result = await aggregator.aggregate(60)

        assert result is not None
        assert result.periods_closed == 1
        assert await watermarks.get(60) == 5
        rows = await _rows(session_factory)
        assert [r.period for r in rows] == [100, 101]
        assert rows[1].amount_in == 20_000
        assert rows[1].triggers_count == 2

    async def test_rerun_without_new_events_is_idempotent(
        self, aggregator, ledger, session_factory, watermarks
    ) -> None:
        await ledger.add_response(1, timestamp=100 * HOUR)
        await ledger.add_response(2, timestamp=101 * HOUR)

        await aggregator.aggregate(60)
        first = await _rows(session_factory)
        result = await aggregator.aggregate(60)

        assert result is not None
        assert result.periods_closed == 0
        assert await _rows(session_factory) == first
        assert await watermarks.get(60) == 1

    async def test_tail_period_not_written(self, aggregator, ledger, session_factory, watermarks) -> None:
        await ledger.add_response(1, timestamp=100 * HOUR)
        await ledger.add_response(2, timestamp=100 * HOUR + 10)

        result = await aggregator.aggregate(60)

        assert result is not None
        assert result.periods_closed == 0
        assert await _rows(session_factory) == []
        assert await watermarks.get(60) is None

    async def test_no_new_events_is_noop(self, aggregator, watermarks) -> None:
        result = await aggregator.aggregate(60)
        assert result is not None
        assert result.rows_written == 0
        assert result.watermark == 0
        assert await watermarks.get(60) is None

    async def test_split_runs_match_single_run(
        self, ledger, session_factory, mock_redis, resolver, rates
    ) -> None:
        events = [(i, (100 + i // 3) * HOUR + i) for i in range(1, 10)]
        events.append((10, 110 * HOUR))

        split = PeriodAggregator(
            session_factory, WatermarkStore(mock_redis), AssetMetadataCache(), resolver, rates
        )
        for response_id, ts in events[:4]:
            await ledger.add_response(response_id, timestamp=ts)
        await split.aggregate(60)
        # A fresh aggregator simulates a restart between the two passes.
        restarted = PeriodAggregator(
            session_factory, WatermarkStore(mock_redis), AssetMetadataCache(), resolver, rates
        )
        for response_id, ts in events[4:]:
            await ledger.add_response(response_id, timestamp=ts)
        await restarted.aggregate(60)
        split_rows = [(r.period, r.amount_in, r.triggers_count) for r in await _rows(session_factory)]

        daily_store = WatermarkStore(mock_redis, key_prefix="single_")
        single = PeriodAggregator(
            session_factory,
            daily_store,
            AssetMetadataCache(),
            resolver,
            rates,
            tables={60: AAStatsDailyModel},
        )
        await single.aggregate(60)
        single_rows = [
            (r.period, r.amount_in, r.triggers_count) for r in await _rows(session_factory, AAStatsDailyModel)
        ]

        assert split_rows == single_rows
        assert [p for p, _, _ in split_rows] == [100, 101, 102, 103]

    async def test_same_key_events_produce_one_row(self, aggregator, ledger, session_factory) -> None:
        await ledger.add_response(1, timestamp=100 * HOUR, trigger_address=USER1)
        await ledger.add_response(2, timestamp=100 * HOUR + 5, trigger_address=USER2)
        await ledger.add_response(3, timestamp=100 * HOUR + 9, trigger_address=USER1, bounced=True)
        await ledger.add_response(4, timestamp=101 * HOUR)

        await aggregator.aggregate(60)

        [row] = await _rows(session_factory)
        assert row.amount_in == 30_000
        assert row.triggers_count == 3
        assert row.bounced_count == 1
        assert row.num_users == 2

    async def test_inflow_and_outflow_rows(self, aggregator, ledger, session_factory) -> None:
        await ledger.add_response(
            1,
            timestamp=100 * HOUR,
            inflows=[(None, 2_000_000_000)],
            outflows=[(USER1, ASSET1, 250), (USER1, None, 1_000_000_000)],
        )
        await ledger.add_response(2, timestamp=100 * HOUR + 30, aa=AA2, inflows=[(ASSET2, 7)])
        await ledger.add_response(3, timestamp=101 * HOUR)

        result = await aggregator.aggregate(60)

        assert result is not None
        assert result.rows_written == 3
        rows = {(r.address, r.asset): r for r in await _rows(session_factory)}
        base = rows[(AA, None)]
        assert base.amount_in == 2_000_000_000
        assert base.amount_out == 1_000_000_000
        assert base.usd_amount_in == 40.0
        assert base.usd_amount_out == 20.0
        asset_row = rows[(AA, ASSET1)]
        assert asset_row.amount_in == 0
        assert asset_row.amount_out == 250
        assert asset_row.usd_amount_out == 2.5
        assert asset_row.usd_amount_in == 0.0
        no_rate = rows[(AA2, ASSET2)]
        assert no_rate.amount_in == 7
        assert no_rate.usd_amount_in is None

    async def test_resolves_new_assets_once_before_conversion(
        self, aggregator, ledger, resolver
    ) -> None:
        await ledger.add_response(1, timestamp=100 * HOUR, inflows=[(ASSET1, 100), (ASSET2, 5)])
        await ledger.add_response(2, timestamp=101 * HOUR, inflows=[(ASSET1, 100)])

        await aggregator.aggregate(60)
        await ledger.add_response(3, timestamp=102 * HOUR, inflows=[(ASSET1, 1)])
        await aggregator.aggregate(60)

        assert len(resolver.calls) == 1
        assert sorted(resolver.calls[0]) == sorted([ASSET1, ASSET2])

    async def test_daily_period_uses_day_buckets(
        self, session_factory, mock_redis, resolver, rates, ledger
    ) -> None:
        aggregator = PeriodAggregator(
            session_factory, WatermarkStore(mock_redis), AssetMetadataCache(), resolver, rates
        )
        await ledger.add_response(1, timestamp=3 * 24 * HOUR + 5)
        await ledger.add_response(2, timestamp=3 * 24 * HOUR + 23 * HOUR)
        await ledger.add_response(3, timestamp=4 * 24 * HOUR)

        await aggregator.aggregate(1440)

        [row] = await _rows(session_factory, AAStatsDailyModel)
        assert row.period == 3
        assert row.triggers_count == 2
        assert row.period_start_date.replace(tzinfo=UTC) == datetime(1970, 1, 4, tzinfo=UTC)
        assert await WatermarkStore(mock_redis).get(1440) == 2
        assert await WatermarkStore(mock_redis).get(60) is None

    async def test_unknown_period_raises(self, aggregator) -> None:
        with pytest.raises(ValueError):
            await aggregator.aggregate(15)

    async def test_concurrent_call_for_same_period_is_dropped(
        self, session_factory, watermarks, rates, ledger
    ) -> None:
        resolver = BlockingResolver()
        aggregator = PeriodAggregator(session_factory, watermarks, AssetMetadataCache(), resolver, rates)
        await ledger.add_response(1, timestamp=100 * HOUR, inflows=[(ASSET1, 1)])
        await ledger.add_response(2, timestamp=101 * HOUR)

        first = asyncio.create_task(aggregator.aggregate(60))
        await resolver.entered.wait()

        assert aggregator.is_running(60)
        assert await aggregator.aggregate(60) is None

        resolver.release.set()
        result = await first
        assert result is not None
        assert result.periods_closed == 1

    async def test_commit_failure_keeps_watermark(self, aggregator, ledger, session_factory, watermarks) -> None:
        await ledger.add_response(1, timestamp=100 * HOUR, inflows=[(ASSET1, 5)])
        await ledger.add_response(2, timestamp=101 * HOUR, inflows=[(ASSET1, 5)])
        await ledger.add_response(3, timestamp=102 * HOUR, inflows=[(ASSET1, 5)])
        # A row already present for period 101 makes that period's insert fail.
        async with session_factory() as session:
            async with session.begin():
                await StatsRepository(session, AAStatsHourlyModel).insert_many(
                    [
                        StatsRowDTO(
                            period=101,
                            period_start_date=datetime.fromtimestamp(101 * HOUR, tz=UTC),
                            address=AA,
                            asset=ASSET1,
                            amount_in=1,
                            amount_out=0,
                            usd_amount_in=None,
                            usd_amount_out=None,
                            triggers_count=1,
                            bounced_count=0,
                            num_users=1,
                        )
                    ]
                )

        with pytest.raises(AggregationError):
            await aggregator.aggregate(60)

        assert await watermarks.get(60) == 1
        rows = await _rows(session_factory)
        assert [(r.period, r.amount_in) for r in rows] == [(100, 5), (101, 1)]
        assert not aggregator.is_running(60)

    async def test_watermark_failure_propagates(self, aggregator, ledger, mock_redis) -> None:
        await ledger.add_response(1, timestamp=100 * HOUR)
        await ledger.add_response(2, timestamp=101 * HOUR)
        mock_redis.set.side_effect = ConnectionError("redis down")

        with pytest.raises(ConnectionError):
            await aggregator.aggregate(60)


class TestReset:
    async def test_rebuild_after_reset_writes_same_rows(
        self, aggregator, ledger, session_factory, watermarks
    ) -> None:
        await ledger.add_response(1, timestamp=100 * HOUR)
        await ledger.add_response(2, timestamp=100 * HOUR + 60, inflows=[(ASSET1, 40)])
        await ledger.add_response(3, timestamp=101 * HOUR, inflows=[(None, 5), (ASSET1, 2)])
        await ledger.add_response(4, timestamp=102 * HOUR)
        await aggregator.aggregate(60)
        before = await _rows(session_factory)
        assert [(r.period, r.asset) for r in before] == [(100, None), (100, ASSET1), (101, None), (101, ASSET1)]

        deleted = await aggregator.reset(60)

        assert deleted == 4
        assert await _rows(session_factory) == []
        assert await watermarks.get(60) == 0

        result = await aggregator.aggregate(60)

        assert result is not None
        assert result.periods_closed == 2
        assert await _rows(session_factory) == before
        assert await watermarks.get(60) == 3

    async def test_reset_touches_only_its_period_length(
        self, aggregator, ledger, session_factory, watermarks
    ) -> None:
        await ledger.add_response(1, timestamp=100 * HOUR)
        await ledger.add_response(2, timestamp=101 * HOUR)
        await aggregator.aggregate(60)
        await watermarks.put(1440, 7)

        await aggregator.reset(1440)

        assert len(await _rows(session_factory)) == 1
        assert await watermarks.get(60) == 1
        assert await watermarks.get(1440) == 0

    async def test_reset_unknown_period_raises(self, aggregator, watermarks) -> None:
        with pytest.raises(ValueError):
            await aggregator.reset(5)
        assert await watermarks.get(5) is None
