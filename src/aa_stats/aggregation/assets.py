"""Asset metadata cache and resolver.

Asset metadata (display name, decimal precision) is treated as immutable once
registered: entries are resolved the first time an asset is seen and kept for
the lifetime of the process.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aa_stats.storage.repos import LedgerRepository

logger = logging.getLogger(__name__)

BASE_DECIMALS = 9


class AssetMetadataError(Exception):
    """Raised when metadata required for an asset is missing."""


@dataclass(frozen=True)
class AssetMetadata:
    asset: str
    name: str | None
    decimals: int


class AssetMetadataResolver(Protocol):
    async def resolve(self, assets: list[str] | None = None) -> dict[str, AssetMetadata]:
        """Resolve metadata for the given assets, or for every known asset if None."""
        ...


class AssetMetadataCache:
    """Process-wide mapping from asset id to its metadata.

    Created once at start-up and shared by the aggregator, the balance
    snapshotter and the query API. Only ``update`` writes to it.
    """

    def __init__(self, entries: Iterable[AssetMetadata] = ()) -> None:
        self._entries: dict[str, AssetMetadata] = {}
        self.update({e.asset: e for e in entries})

    def __contains__(self, asset: object) -> bool:
        return asset in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def is_empty(self) -> bool:
        return not self._entries

    def get(self, asset: str) -> AssetMetadata | None:
        return self._entries.get(asset)

    def update(self, entries: dict[str, AssetMetadata]) -> None:
        self._entries.update(entries)

    def missing(self, assets: Iterable[str | None]) -> list[str]:
        """Distinct non-null assets not cached yet, in first-seen order."""
        seen: dict[str, None] = {}
        for asset in assets:
            if asset is not None and asset not in self._entries:
                seen.setdefault(asset, None)
        return list(seen)

    def get_decimals(self, asset: str | None) -> int:
        if asset is None:
            return BASE_DECIMALS
        entry = self._entries.get(asset)
        if entry is None:
            raise AssetMetadataError(f"No metadata for asset {asset}")
        return entry.decimals

    def get_asset_name(self, asset: str | None) -> str | None:
        """Display name of an asset, falling back to its id."""
        if asset is None:
            return None
        entry = self._entries.get(asset)
        if entry is not None and entry.name:
            return entry.name
        return asset

    def get_asset_id(self, asset: str | None) -> str | None:
        """Accept an asset id or a display name and return the asset id."""
        if asset is None or asset in self._entries:
            return asset
        for asset_id, entry in self._entries.items():
            if entry.name == asset:
                return asset_id
        return asset


class LedgerAssetMetadataResolver:
    """Resolves metadata from the registry table of the ledger database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def resolve(self, assets: list[str] | None = None) -> dict[str, AssetMetadata]:
        if assets is not None and not assets:
            return {}
        async with self._session_factory() as session:
            rows = await LedgerRepository(session).list_asset_metadata(assets)
        return {r.asset: AssetMetadata(asset=r.asset, name=r.name, decimals=r.decimals) for r in rows}


async def refresh_asset_metadata(
    cache: AssetMetadataCache,
    resolver: AssetMetadataResolver,
    assets: list[str] | None = None,
) -> int:
    """Resolve assets in one batch and merge them into the cache.

    Returns:
        Number of entries added or refreshed.
    """
    resolved = await resolver.resolve(assets)
    cache.update(resolved)
    if assets:
        unresolved = [a for a in assets if a not in resolved]
        if unresolved:
            logger.warning("No registry metadata for %d assets: %s", len(unresolved), ", ".join(unresolved))
    logger.debug("Asset metadata cache now holds %d assets", len(cache))
    return len(resolved)
