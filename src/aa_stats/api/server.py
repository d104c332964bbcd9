"""Read-only HTTP API over the stats and balance snapshot tables.

Every endpoint lives under ``/api/v1`` and accepts parameters either as a
JSON body (POST) or as a query string (GET).
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable
from decimal import Decimal
from functools import partial
from typing import Any

from aiohttp import web
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aa_stats.aggregation.assets import BASE_DECIMALS, AssetMetadataCache
from aa_stats.storage.models import BASE_ASSET_SENTINEL, STATS_TABLES
from aa_stats.storage.repos import TOP_METRICS, BalanceSnapshotRepository, StatsRepository

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
TIMEFRAMES: dict[str, int] = {"hourly": 60, "daily": 60 * 24}

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


class InvalidRequest(Exception):
    """Raised by parameter parsing; rendered as a JSON error response."""

    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.status = status


def _json_default(value: Any) -> Any:
    # PostgreSQL returns SUM() over integer columns as NUMERIC.
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


json_dumps = partial(json.dumps, default=_json_default)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except InvalidRequest as e:
        return web.json_response({"error": str(e)}, status=e.status)


@web.middleware
async def cors_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    if request.method == "OPTIONS":
        response: web.StreamResponse = web.Response(status=204)
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    else:
        try:
            response = await handler(request)
        except web.HTTPException as e:
            e.headers["Access-Control-Allow-Origin"] = "*"
            raise
    response.headers["Access-Control-Allow-Origin"] = "*"
    return response


# ============================================================================
# Parameter parsing
# ============================================================================


async def read_params(request: web.Request) -> dict[str, Any]:
    """Merge the query string with a JSON object body, the body winning."""
    params: dict[str, Any] = dict(request.query)
    if request.method == "POST" and request.can_read_body:
        raw = await request.text()
        if raw.strip():
            try:
                body = json.loads(raw)
            except json.JSONDecodeError:
                raise InvalidRequest("Request body is not valid JSON") from None
            if not isinstance(body, dict):
                raise InvalidRequest("Request body must be a JSON object")
            params.update(body)
    return params


def parse_int(params: dict[str, Any], name: str, default: int | None = None) -> int:
    value = params.get(name)
    if value is None or value == "":
        if default is None:
            raise InvalidRequest(f"Missing parameter: {name}")
        return default
    if isinstance(value, bool):
        raise InvalidRequest(f"Parameter {name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise InvalidRequest(f"Parameter {name} must be an integer")


def parse_limit(params: dict[str, Any], default: int) -> int:
    limit = parse_int(params, "limit", default)
    if limit <= 0:
        raise InvalidRequest("Parameter limit must be positive")
    return limit


def parse_timeframe(params: dict[str, Any]) -> int:
    timeframe = params.get("timeframe") or "hourly"
    if timeframe not in TIMEFRAMES:
        raise InvalidRequest(f"Unknown timeframe: {timeframe}")
    return TIMEFRAMES[timeframe]


def parse_address(params: dict[str, Any]) -> str:
    address = params.get("address")
    if not isinstance(address, str) or not address:
        raise InvalidRequest("Missing parameter: address")
    return address


# ============================================================================
# Application
# ============================================================================


class StatsApi:
    """aiohttp application serving activity, TVL and ranking queries."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        assets: AssetMetadataCache,
        *,
        host: str = "0.0.0.0",
        port: int = 8080,
        default_limit: int = 50,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session_factory = session_factory
        self._assets = assets
        self.host = host
        self.port = port
        self._default_limit = default_limit
        self._clock = clock
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def create_app(self) -> web.Application:
        api = web.Application()
        # /top/aa/tvl is registered before the /top/aa/{type} pattern.
        api.router.add_route("*", "/address", self.address_stats)
        api.router.add_route("*", "/address/tvl", self.address_tvl)
        api.router.add_route("*", "/total/tvl", self.total_tvl)
        api.router.add_route("*", "/total/activity", self.total_activity)
        api.router.add_route("*", "/top/aa/tvl", self.top_aa_tvl)
        api.router.add_route("*", "/top/aa/{type}", self.top_aa)
        api.router.add_route("*", "/top/asset/tvl", self.top_asset_tvl)
        api.router.add_route("*", "/top/asset/amount_in", self.top_asset_amount_in)

        app = web.Application(middlewares=[cors_middleware, error_middleware])
        app.add_subapp(API_PREFIX, api)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()
        logger.info("Stats API listening on %s:%d%s", self.host, self.port, API_PREFIX)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
        self._runner = None
        self._site = None
        logger.info("Stats API stopped")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _last_completed(self, period_minutes: int) -> int:
        return int(self._clock() // (period_minutes * 60)) - 1

    def _asset_filter(self, params: dict[str, Any]) -> tuple[bool, str | None]:
        """Return (filter by asset?, asset id). Accepts ids or display names."""
        if "asset" not in params:
            return False, None
        value = params["asset"]
        if value in (None, "", "null", BASE_ASSET_SENTINEL):
            return True, None
        if not isinstance(value, str):
            raise InvalidRequest("Parameter asset must be a string or null")
        return True, self._assets.get_asset_id(value)

    def enrich(
        self,
        rows: list[dict[str, Any]],
        *,
        by_asset: bool,
        asset: str | None = None,
    ) -> list[dict[str, Any]]:
        """Attach decimals and replace asset ids with display names."""
        for row in rows:
            has_asset = "asset" in row
            if has_asset or by_asset:
                row_asset = row["asset"] if has_asset else asset
                if row_asset is None:
                    row["decimals"] = BASE_DECIMALS
                else:
                    entry = self._assets.get(row_asset)
                    row["decimals"] = entry.decimals if entry is not None else None
            if row.get("asset"):
                row["asset"] = self._assets.get_asset_name(row["asset"])
        return rows

    def _respond(self, rows: list[dict[str, Any]]) -> web.Response:
        return web.json_response(rows, dumps=json_dumps)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def address_stats(self, request: web.Request) -> web.Response:
        params = await read_params(request)
        address = parse_address(params)
        model = STATS_TABLES[parse_timeframe(params)]
        period_from = parse_int(params, "from")
        period_to = parse_int(params, "to")
        by_asset, asset = self._asset_filter(params)
        async with self._session_factory() as session:
            rows = await StatsRepository(session, model).list_for_address(
                address, period_from=period_from, period_to=period_to, by_asset=by_asset, asset=asset
            )
        return self._respond(self.enrich(rows, by_asset=by_asset, asset=asset))

    async def address_tvl(self, request: web.Request) -> web.Response:
        params = await read_params(request)
        address = parse_address(params)
        hour_from = parse_int(params, "from")
        hour_to = parse_int(params, "to")
        by_asset, asset = self._asset_filter(params)
        async with self._session_factory() as session:
            rows = await BalanceSnapshotRepository(session).list_for_address(
                address, hour_from=hour_from, hour_to=hour_to, by_asset=by_asset, asset=asset
            )
        return self._respond(self.enrich(rows, by_asset=by_asset, asset=asset))

    async def total_tvl(self, request: web.Request) -> web.Response:
        params = await read_params(request)
        hour_from = parse_int(params, "from")
        hour_to = parse_int(params, "to")
        by_asset, asset = self._asset_filter(params)
        async with self._session_factory() as session:
            rows = await BalanceSnapshotRepository(session).total_tvl(
                hour_from=hour_from, hour_to=hour_to, by_asset=by_asset, asset=asset
            )
        return self._respond(self.enrich(rows, by_asset=by_asset, asset=asset))

    async def total_activity(self, request: web.Request) -> web.Response:
        params = await read_params(request)
        model = STATS_TABLES[parse_timeframe(params)]
        period_from = parse_int(params, "from")
        period_to = parse_int(params, "to")
        by_asset, asset = self._asset_filter(params)
        async with self._session_factory() as session:
            rows = await StatsRepository(session, model).total_activity(
                period_from=period_from, period_to=period_to, by_asset=by_asset, asset=asset
            )
        return self._respond(self.enrich(rows, by_asset=by_asset, asset=asset))

    async def top_aa_tvl(self, request: web.Request) -> web.Response:
        params = await read_params(request)
        hour = parse_int(params, "period", self._last_completed(60))
        limit = parse_limit(params, self._default_limit)
        by_asset, asset = self._asset_filter(params)
        async with self._session_factory() as session:
            rows = await BalanceSnapshotRepository(session).top_addresses_by_tvl(
                hour=hour, limit=limit, by_asset=by_asset, asset=asset
            )
        return self._respond(self.enrich(rows, by_asset=by_asset, asset=asset))

    async def top_aa(self, request: web.Request) -> web.Response:
        metric = request.match_info["type"]
        if metric not in TOP_METRICS:
            raise InvalidRequest(f"Unknown ranking type: {metric}", status=404)
        params = await read_params(request)
        period_minutes = parse_timeframe(params)
        last = self._last_completed(period_minutes)
        period_from = parse_int(params, "from", last)
        period_to = parse_int(params, "to", last)
        limit = parse_limit(params, self._default_limit)
        by_asset, asset = self._asset_filter(params)
        async with self._session_factory() as session:
            rows = await StatsRepository(session, STATS_TABLES[period_minutes]).top_addresses(
                metric,  # type: ignore[arg-type]
                period_from=period_from,
                period_to=period_to,
                limit=limit,
                by_asset=by_asset,
                asset=asset,
            )
        return self._respond(self.enrich(rows, by_asset=by_asset, asset=asset))

    async def top_asset_tvl(self, request: web.Request) -> web.Response:
        params = await read_params(request)
        hour = parse_int(params, "period", self._last_completed(60))
        limit = parse_limit(params, self._default_limit)
        async with self._session_factory() as session:
            rows = await BalanceSnapshotRepository(session).top_assets_by_tvl(hour=hour, limit=limit)
        return self._respond(self.enrich(rows, by_asset=True))

    async def top_asset_amount_in(self, request: web.Request) -> web.Response:
        params = await read_params(request)
        hour = parse_int(params, "period", self._last_completed(60))
        limit = parse_limit(params, self._default_limit)
        async with self._session_factory() as session:
            rows = await StatsRepository(session, STATS_TABLES[60]).top_assets_by_amount_in(
                period=hour, limit=limit
            )
        return self._respond(self.enrich(rows, by_asset=True))
