"""Durable per-period watermarks backed by Redis.

A watermark is the highest ``aa_response_id`` already folded into committed
stats rows for one period length. It is only ever written after the rows it
covers have been committed.
"""

from __future__ import annotations

import logging

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "aa_stats_last_response_id_"


class WatermarkError(Exception):
    """Raised when a stored watermark cannot be interpreted."""


class WatermarkStore:
    """Key/value persistence of the last processed response id per period length.

    Keys are ``{prefix}{period_minutes}``, e.g. ``aa_stats_last_response_id_60``.
    """

    def __init__(self, redis: Redis, *, key_prefix: str = DEFAULT_KEY_PREFIX) -> None:
        self._redis = redis
        self._key_prefix = key_prefix

    def key(self, period_minutes: int) -> str:
        return f"{self._key_prefix}{period_minutes}"

    async def get(self, period_minutes: int) -> int | None:
        """Return the stored watermark, or None if none was ever stored."""
        raw = await self._redis.get(self.key(period_minutes))
        if raw is None:
            return None
        value = raw.decode() if isinstance(raw, bytes) else str(raw)
        try:
            return int(value)
        except ValueError:
            raise WatermarkError(f"Corrupt watermark for {period_minutes} minutes: {value!r}") from None

    async def put(self, period_minutes: int, value: int) -> None:
        """Persist a watermark. Redis errors propagate to the caller."""
        if value < 0:
            raise WatermarkError(f"Watermark must be non-negative, got {value}")
        await self._redis.set(self.key(period_minutes), str(int(value)))
        logger.debug("Stored watermark %s=%d", self.key(period_minutes), value)

    async def reset(self, period_minutes: int) -> None:
        """Rewind a period to the beginning of the ledger.

        The stats rows of that period length must be cleared with it; see
        ``PeriodAggregator.reset``.
        """
        await self.put(period_minutes, 0)
        logger.warning("Watermark for %d minutes reset to 0", period_minutes)
