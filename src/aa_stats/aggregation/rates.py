"""USD conversion and the exchange-rate feed."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import aiohttp

from aa_stats.aggregation.assets import BASE_DECIMALS, AssetMetadataCache

logger = logging.getLogger(__name__)

DEFAULT_BASE_SYMBOL = "GBYTE"
USD_DIGITS = 2


class RateFeedError(Exception):
    """Raised when the rate feed returns an unusable payload."""


class ExchangeRates(Mapping[str, float]):
    """Last known ``'<ASSET>_USD' -> rate`` mapping, pushed by the rate feed."""

    def __init__(self, rates: Mapping[str, float] | None = None) -> None:
        self._rates: dict[str, float] = dict(rates or {})
        self.updated_at: datetime | None = None

    def __getitem__(self, key: str) -> float:
        return self._rates[key]

    def __iter__(self):
        return iter(self._rates)

    def __len__(self) -> int:
        return len(self._rates)

    def update(self, rates: Mapping[str, float]) -> None:
        self._rates.update(rates)
        self.updated_at = datetime.now(UTC)


def get_usd_amount(
    asset: str | None,
    amount: int,
    *,
    rates: Mapping[str, float],
    assets: AssetMetadataCache,
    base_symbol: str = DEFAULT_BASE_SYMBOL,
) -> float | None:
    """Convert a raw amount to USD, or None if the asset has no known rate.

    The base currency (``asset=None``) is quoted per whole unit of
    ``10**9`` minor units. A named asset is quoted per whole unit of
    ``10**decimals`` minor units when its decimals are known.
    """
    rate: float | None = None
    if asset is not None:
        rate = rates.get(f"{asset}_USD")
        if rate:
            entry = assets.get(asset)
            if entry is not None and entry.decimals > 0:
                rate /= 10**entry.decimals
    else:
        rate = rates.get(f"{base_symbol}_USD")
        if rate:
            rate /= 10**BASE_DECIMALS
    if not rate:
        return None
    return round(amount * rate, USD_DIGITS)


def parse_rates(payload: Any) -> dict[str, float]:
    """Keep the ``*_USD`` numeric entries of a feed payload."""
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        payload = payload["data"]
    if not isinstance(payload, dict):
        raise RateFeedError(f"Unexpected rate payload type: {type(payload).__name__}")
    parsed: dict[str, float] = {}
    for key, value in payload.items():
        if not isinstance(key, str) or not key.endswith("_USD"):
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        parsed[key] = float(value)
    return parsed


class ExchangeRateFeed:
    """Background poller that keeps an ``ExchangeRates`` mapping current.

    A failed poll keeps the last known rates; conversions never wait for the
    feed.
    """

    def __init__(
        self,
        rates: ExchangeRates,
        url: str,
        *,
        poll_interval_seconds: int = 120,
        timeout_seconds: float = 20.0,
    ) -> None:
        self._rates = rates
        self._url = url
        self._poll_interval = poll_interval_seconds
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: aiohttp.ClientSession | None = None
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Fetch rates once, then keep polling in the background."""
        if self._task is not None:
            return
        self._stop_event.clear()
        self._session = aiohttp.ClientSession(timeout=self._timeout)
        try:
            await self.refresh()
        except Exception as e:
            logger.warning("Initial exchange rate fetch failed: %s", e)
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("Exchange rate feed started (%s)", self._url)

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
        logger.info("Exchange rate feed stopped")

    async def refresh(self) -> int:
        """Fetch the feed once and merge the rates; returns the number of rates."""
        if self._session is None:
            raise RateFeedError("Rate feed is not started")
        async with self._session.get(self._url) as response:
            response.raise_for_status()
            payload = await response.json(content_type=None)
        rates = parse_rates(payload)
        if not rates:
            raise RateFeedError("Rate feed returned no USD rates")
        self._rates.update(rates)
        logger.debug("Updated %d exchange rates", len(rates))
        return len(rates)

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)
                    break
                except TimeoutError:
                    pass
                await self.refresh()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Exchange rate poll failed, keeping last known rates: %s", e)
