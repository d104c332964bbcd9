"""Service orchestrator for the aa-stats aggregator.

This module provides the StatsService class that wires together storage, the
watermark store, the asset metadata cache, the rate feed and the query API,
and drives the aggregation and snapshot tasks on their cadences.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from aa_stats.aggregation.assets import (
    AssetMetadataCache,
    LedgerAssetMetadataResolver,
    refresh_asset_metadata,
)
from aa_stats.aggregation.balances import BalanceSnapshotter, SnapshotResult
from aa_stats.aggregation.periods import AggregationResult, PeriodAggregator
from aa_stats.aggregation.rates import ExchangeRateFeed, ExchangeRates
from aa_stats.aggregation.watermark import WatermarkStore
from aa_stats.api.server import StatsApi
from aa_stats.config import Settings, get_settings
from aa_stats.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

HOURLY_MINUTES = 60
DAILY_MINUTES = 60 * 24


class ServiceState(str, Enum):
    """Service lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceStats:
    """Statistics for the service."""

    started_at: datetime | None = None
    ticks: int = 0
    errors: int = 0
    last_error: str | None = None


class PeriodicTask:
    """Runs a callback on a fixed cadence until stopped.

    Each tick spawns the callback as its own task, so a slow call never delays
    the timer. Overlapping calls are the callback's concern (the aggregator and
    the snapshotter drop them). A failed call is logged and retried on the next
    tick.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[Any]],
        *,
        initial_delay: float = 0.0,
        on_error: Callable[[BaseException], None] | None = None,
    ) -> None:
        self.name = name
        self.interval = interval
        self._callback = callback
        self._initial_delay = initial_delay
        self._on_error = on_error
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[Any]] = set()
        self.ticks = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name=f"periodic:{self.name}")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        for task in list(self._inflight):
            task.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        self._inflight.clear()

    def tick(self) -> asyncio.Task[Any]:
        """Spawn one invocation of the callback."""
        self.ticks += 1
        task = asyncio.create_task(self._callback(), name=f"{self.name}:{self.ticks}")
        self._inflight.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        logger.error("%s failed: %s", self.name, exc, exc_info=exc)
        if self._on_error is not None:
            self._on_error(exc)

    async def _wait(self, timeout: float) -> bool:
        """Wait for the stop event; True if stopping."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except TimeoutError:
            return False

    async def _run(self) -> None:
        if self._initial_delay > 0 and await self._wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            self.tick()
            if await self._wait(self.interval):
                break


class StatsService:
    """Main orchestrator for the aa-stats aggregator.

    Example:
        ```python
        from aa_stats.config import get_settings
        from aa_stats.service import StatsService

        service = StatsService(get_settings())
        await service.start()
        # Runs until stop() is called
        await service.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        enable_api: bool | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            enable_api: Overrides settings.api.enabled.
        """
        self._settings = settings or get_settings()
        self._enable_api = enable_api if enable_api is not None else self._settings.api.enabled

        self._state = ServiceState.STOPPED
        self._stats = ServiceStats()

        self.assets = AssetMetadataCache()
        self.rates = ExchangeRates()

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._rate_feed: ExchangeRateFeed | None = None
        self._api: StatsApi | None = None
        self.aggregator: PeriodAggregator | None = None
        self.snapshotter: BalanceSnapshotter | None = None
        self.watermarks: WatermarkStore | None = None

        self._stop_event: asyncio.Event | None = None
        self._tasks: list[PeriodicTask] = []

    @property
    def state(self) -> ServiceState:
        """Current service state."""
        return self._state

    @property
    def stats(self) -> ServiceStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    async def start(self) -> None:
        """Start the service.

        Raises:
            RuntimeError: If the service is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start service in state {self._state}")

        self._state = ServiceState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting aa-stats service...")

        try:
            await self.initialize()
            await self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = ServiceState.RUNNING
            logger.info("aa-stats service started")
        except Exception as e:
            self._state = ServiceState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start service: %s", e)
            await self._stop_background_services()
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the service gracefully."""
        if self._state == ServiceState.STOPPED:
            return

        self._state = ServiceState.STOPPING
        logger.info("Stopping aa-stats service...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._cleanup()

        self._state = ServiceState.STOPPED
        logger.info("aa-stats service stopped")

    async def initialize(self) -> None:
        """Create connections and core components and warm the asset cache.

        Also used on its own by the one-shot CLI commands.
        """
        settings = self._settings

        logger.debug("Initializing Redis connection...")
        self._redis = Redis.from_url(settings.redis.url)
        self.watermarks = WatermarkStore(self._redis, key_prefix=settings.redis.watermark_key_prefix)

        logger.debug("Initializing database manager...")
        self._db_manager = DatabaseManager(settings.database.url, pool_size=settings.database.pool_size)
        session_factory = self._db_manager.session_factory

        resolver = LedgerAssetMetadataResolver(session_factory)
        count = await refresh_asset_metadata(self.assets, resolver)
        logger.info("Loaded metadata of %d assets", count)

        self.aggregator = PeriodAggregator(
            session_factory,
            self.watermarks,
            self.assets,
            resolver,
            self.rates,
            base_symbol=settings.rates.base_symbol,
        )
        self.snapshotter = BalanceSnapshotter(
            session_factory,
            self.assets,
            self.rates,
            base_symbol=settings.rates.base_symbol,
        )

        if settings.rates.url:
            self._rate_feed = ExchangeRateFeed(
                self.rates,
                settings.rates.url,
                poll_interval_seconds=settings.rates.poll_interval_seconds,
            )
        else:
            logger.warning("RATES_URL not set; USD amounts will be null")

        if self._enable_api:
            self._api = StatsApi(
                session_factory,
                self.assets,
                host=settings.api.host,
                port=settings.api.port,
                default_limit=settings.api.default_limit,
            )

        logger.info("All components initialized")

    async def aggregate(self, period_minutes: int) -> AggregationResult | None:
        if self.aggregator is None:
            raise RuntimeError("Service is not initialized")
        return await self.aggregator.aggregate(period_minutes)

    async def reset_stats(self, period_minutes: int) -> int:
        if self.aggregator is None:
            raise RuntimeError("Service is not initialized")
        return await self.aggregator.reset(period_minutes)

    async def snapshot_balances(self) -> SnapshotResult | None:
        if self.snapshotter is None:
            raise RuntimeError("Service is not initialized")
        return await self.snapshotter.snapshot_balances()

    def _record_error(self, exc: BaseException) -> None:
        self._stats.errors += 1
        self._stats.last_error = str(exc)

    async def _start_background_services(self) -> None:
        cadence = self._settings.aggregation

        if self._rate_feed:
            logger.debug("Starting exchange rate feed...")
            await self._rate_feed.start()

        self._tasks = [
            PeriodicTask(
                "hourly aggregation",
                cadence.hourly_interval_seconds,
                lambda: self.aggregate(HOURLY_MINUTES),
                on_error=self._record_error,
            ),
            PeriodicTask(
                "daily aggregation",
                cadence.daily_interval_seconds,
                lambda: self.aggregate(DAILY_MINUTES),
                initial_delay=cadence.daily_initial_delay_seconds,
                on_error=self._record_error,
            ),
            PeriodicTask(
                "balance snapshot",
                cadence.snapshot_interval_seconds,
                self.snapshot_balances,
                on_error=self._record_error,
            ),
        ]
        for task in self._tasks:
            logger.debug("Starting %s every %ss", task.name, task.interval)
            task.start()

        if self._api:
            logger.debug("Starting query API...")
            await self._api.start()

    async def _stop_background_services(self) -> None:
        if self._api:
            logger.debug("Stopping query API...")
            await self._api.stop()
            self._api = None

        for task in self._tasks:
            self._stats.ticks += task.ticks
            await task.stop()
        self._tasks = []

        if self._rate_feed:
            logger.debug("Stopping exchange rate feed...")
            await self._rate_feed.stop()
            self._rate_feed = None

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    async def close(self) -> None:
        """Release connections opened by ``initialize`` without a full start."""
        await self._cleanup()

    async def run(self) -> None:
        """Start the service and block until a stop signal is received."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> StatsService:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
