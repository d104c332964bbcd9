"""Hourly snapshots of agent balances with their USD value."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aa_stats.aggregation.assets import AssetMetadataCache
from aa_stats.aggregation.rates import DEFAULT_BASE_SYMBOL, get_usd_amount
from aa_stats.storage.models import BASE_ASSET_SENTINEL
from aa_stats.storage.repos import BalanceSnapshotDTO, BalanceSnapshotRepository, LedgerRepository

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600


class SnapshotError(Exception):
    """Raised when a snapshot would be written with incomplete asset data."""


@dataclass(frozen=True)
class SnapshotResult:
    hour: int
    rows_written: int
    rows_skipped: int


class BalanceSnapshotter:
    """Copies live balances into ``aa_balances_hourly`` once per hour.

    The snapshotter is called far more often than once an hour and gates
    itself on the latest stored hour. Hours during which the process was down
    are not backfilled.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        assets: AssetMetadataCache,
        rates: Mapping[str, float],
        *,
        clock: Callable[[], float] = time.time,
        base_symbol: str = DEFAULT_BASE_SYMBOL,
    ) -> None:
        self._session_factory = session_factory
        self._assets = assets
        self._rates = rates
        self._clock = clock
        self._base_symbol = base_symbol
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def current_hour(self) -> int:
        return int(self._clock() // SECONDS_PER_HOUR)

    async def snapshot_balances(self) -> SnapshotResult | None:
        """Snapshot every live balance for the current hour.

        Returns:
            The snapshot summary, or None when a snapshot is already running
            or the current hour has already been snapshotted.

        Raises:
            SnapshotError: If a balance references an asset whose metadata
                or definition is unknown. Nothing is written in that case.
        """
        if self._lock.locked():
            logger.debug("Balance snapshot already in progress, skipping")
            return None
        async with self._lock:
            return await self._snapshot()

    async def _snapshot(self) -> SnapshotResult | None:
        hour = self.current_hour()

        async with self._session_factory() as session:
            async with session.begin():
                snapshots = BalanceSnapshotRepository(session)
                last_hour = await snapshots.get_last_hour()
                if hour <= last_hour:
                    return None

                ledger = LedgerRepository(session)
                balances = await ledger.list_live_balances()
                named = [b.asset for b in balances if b.asset != BASE_ASSET_SENTINEL]
                if named and self._assets.is_empty:
                    raise SnapshotError("Asset metadata cache is empty; warm it before the first snapshot")
                infos = await ledger.get_asset_infos(named)

                date = datetime.fromtimestamp(hour * SECONDS_PER_HOUR, tz=UTC)
                rows: list[BalanceSnapshotDTO] = []
                skipped = 0
                for balance in balances:
                    asset = None if balance.asset == BASE_ASSET_SENTINEL else balance.asset
                    if asset is not None:
                        info = infos.get(asset)
                        if info is None:
                            raise SnapshotError(f"No definition found for asset {asset}")
                        # Uncapped assets are minted on demand by their definer.
                        if not info.cap and info.definer_address == balance.address:
                            skipped += 1
                            continue
                    rows.append(
                        BalanceSnapshotDTO(
                            hour=hour,
                            date=date,
                            address=balance.address,
                            asset=asset,
                            balance=balance.balance,
                            usd_balance=get_usd_amount(
                                asset,
                                balance.balance,
                                rates=self._rates,
                                assets=self._assets,
                                base_symbol=self._base_symbol,
                            ),
                        )
                    )
                written = await snapshots.insert_many(rows)

        logger.info("Snapshotted %d balances for hour %d (%d self-minted skipped)", written, hour, skipped)
        return SnapshotResult(hour=hour, rows_written=written, rows_skipped=skipped)
