"""Tests for the query API."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from aiohttp import test_utils
from conftest import AA, AA2, ASSET1, HOUR

from aa_stats.api.server import InvalidRequest, StatsApi, parse_int
from aa_stats.storage.models import AAStatsDailyModel, AAStatsHourlyModel
from aa_stats.storage.repos import (
    BalanceSnapshotDTO,
    BalanceSnapshotRepository,
    StatsRepository,
    StatsRowDTO,
)

NOW = 301 * HOUR + 120


def _stats_row(period: int, address: str, asset: str | None, amount_in: int, usd_in: float | None) -> StatsRowDTO:
    return StatsRowDTO(
        period=period,
        period_start_date=datetime.fromtimestamp(period * HOUR, tz=UTC),
        address=address,
        asset=asset,
        amount_in=amount_in,
        amount_out=0,
        usd_amount_in=usd_in,
        usd_amount_out=None,
        triggers_count=1,
        bounced_count=0,
        num_users=1,
    )


@pytest.fixture
async def seeded(session_factory) -> None:
    async with session_factory() as session:
        async with session.begin():
            await StatsRepository(session, AAStatsHourlyModel).insert_many(
                [
                    _stats_row(300, AA, None, 10**9, 20.0),
                    _stats_row(300, AA, ASSET1, 1234, 12.34),
                    _stats_row(300, AA2, None, 5 * 10**9, 100.0),
                ]
            )
            await StatsRepository(session, AAStatsDailyModel).insert_many([_stats_row(12, AA, None, 7, 0.01)])
            await BalanceSnapshotRepository(session).insert_many(
                [
                    BalanceSnapshotDTO(300, datetime.fromtimestamp(300 * HOUR, tz=UTC), AA, None, 10**9, 20.0),
                    BalanceSnapshotDTO(300, datetime.fromtimestamp(300 * HOUR, tz=UTC), AA, ASSET1, 500, 5.0),
                    BalanceSnapshotDTO(300, datetime.fromtimestamp(300 * HOUR, tz=UTC), AA2, None, 10**8, 2.0),
                ]
            )


@pytest.fixture
async def client(session_factory, asset_cache, seeded):
    api = StatsApi(session_factory, asset_cache, clock=lambda: NOW)
    client = test_utils.TestClient(test_utils.TestServer(api.create_app()))
    await client.start_server()
    yield client
    await client.close()


class TestParseInt:
    @pytest.mark.parametrize("value,expected", [(5, 5), ("42", 42), (" 7 ", 7), (3.0, 3)])
    def test_accepts_integers(self, value, expected) -> None:
        assert parse_int({"x": value}, "x") == expected

    @pytest.mark.parametrize("value", ["abc", 1.5, True, [1]])
    def test_rejects_non_integers(self, value) -> None:
        with pytest.raises(InvalidRequest):
            parse_int({"x": value}, "x")

    def test_default_and_missing(self) -> None:
        assert parse_int({}, "x", 9) == 9
        with pytest.raises(InvalidRequest):
            parse_int({"x": ""}, "x")


class TestAddressEndpoints:
    async def test_address_post_json(self, client) -> None:
        resp = await client.post("/api/v1/address", json={"address": AA, "from": 300, "to": 300})

        assert resp.status == 200
        assert resp.headers["Access-Control-Allow-Origin"] == "*"
        rows = await resp.json()
        assert {(r["asset"], r["decimals"]) for r in rows} == {(None, 9), ("USDX", 2)}

    async def test_address_get_query_with_asset_name(self, client) -> None:
        resp = await client.get(
            "/api/v1/address", params={"address": AA, "from": "299", "to": "301", "asset": "USDX"}
        )

        assert resp.status == 200
        [row] = await resp.json()
        assert row["asset"] == "USDX"
        assert row["amount_in"] == 1234
        assert row["usd_amount_in"] == 12.34

    async def test_address_daily_timeframe(self, client) -> None:
        resp = await client.post(
            "/api/v1/address", json={"address": AA, "timeframe": "daily", "from": 12, "to": 12}
        )
        [row] = await resp.json()
        assert row["period"] == 12

    async def test_address_tvl_base_filter(self, client) -> None:
        resp = await client.post("/api/v1/address/tvl", json={"address": AA, "from": 300, "to": 300, "asset": None})
        [row] = await resp.json()
        assert row["asset"] is None
        assert row["balance"] == 10**9
        assert row["decimals"] == 9

    async def test_missing_address_is_400(self, client) -> None:
        resp = await client.post("/api/v1/address", json={"from": 1, "to": 2})
        assert resp.status == 400

    async def test_bad_timeframe_is_400(self, client) -> None:
        resp = await client.post("/api/v1/address", json={"address": AA, "timeframe": "weekly", "from": 1, "to": 2})
        assert resp.status == 400

    async def test_non_numeric_range_is_400(self, client) -> None:
        resp = await client.get("/api/v1/address/tvl", params={"address": AA, "from": "yesterday", "to": "1"})
        assert resp.status == 400
        assert "from" in (await resp.json())["error"]

    async def test_invalid_json_is_400(self, client) -> None:
        resp = await client.post(
            "/api/v1/address", data="{not json", headers={"Content-Type": "application/json"}
        )
        assert resp.status == 400


class TestTotals:
    async def test_total_tvl(self, client) -> None:
        resp = await client.post("/api/v1/total/tvl", json={"from": 300, "to": 300})
        [row] = await resp.json()
        assert row == {"period": 300, "usd_balance": 27.0}

    async def test_total_activity_with_asset(self, client) -> None:
        resp = await client.post("/api/v1/total/activity", json={"from": 300, "to": 300, "asset": None})
        [row] = await resp.json()
        assert row["amount_in"] == 6 * 10**9
        assert row["usd_amount_in"] == 120.0
        assert row["decimals"] == 9


class TestTop:
    async def test_top_aa_metric(self, client) -> None:
        resp = await client.post("/api/v1/top/aa/usd_amount_in", json={"from": 300, "to": 300})
        rows = await resp.json()
        assert [r["address"] for r in rows] == [AA2, AA]

    async def test_top_aa_defaults_to_last_completed_period(self, client) -> None:
        resp = await client.get("/api/v1/top/aa/triggers_count")
        rows = await resp.json()
        assert {r["address"] for r in rows} == {AA, AA2}

    async def test_top_aa_limit(self, client) -> None:
        resp = await client.post("/api/v1/top/aa/usd_amount_in", json={"from": 300, "to": 300, "limit": "1"})
        assert len(await resp.json()) == 1

    async def test_unknown_metric_is_404(self, client) -> None:
        resp = await client.post("/api/v1/top/aa/bounced_count", json={})
        assert resp.status == 404
        assert resp.headers["Access-Control-Allow-Origin"] == "*"

    async def test_bad_limit_is_400(self, client) -> None:
        resp = await client.post("/api/v1/top/aa/num_users", json={"limit": "many"})
        assert resp.status == 400

    async def test_top_aa_tvl(self, client) -> None:
        resp = await client.get("/api/v1/top/aa/tvl")
        rows = await resp.json()
        assert [(r["address"], r["usd_balance"]) for r in rows] == [(AA, 25.0), (AA2, 2.0)]

    async def test_top_asset_tvl(self, client) -> None:
        resp = await client.post("/api/v1/top/asset/tvl", json={"period": 300})
        rows = await resp.json()
        assert [(r["asset"], r["decimals"]) for r in rows] == [(None, 9), ("USDX", 2)]
        assert rows[0]["total_usd_balance"] == 22.0

    async def test_top_asset_amount_in(self, client) -> None:
        resp = await client.post("/api/v1/top/asset/amount_in", json={"period": 300})
        rows = await resp.json()
        assert rows[0]["asset"] is None
        assert rows[0]["total_amount_in"] == 6 * 10**9
        assert rows[1]["asset"] == "USDX"

    async def test_options_preflight(self, client) -> None:
        resp = await client.options("/api/v1/top/aa/tvl")
        assert resp.status == 204
        assert resp.headers["Access-Control-Allow-Origin"] == "*"
