"""Aggregation core - watermarks, asset metadata, rates, periods and snapshots."""

from aa_stats.aggregation.assets import (
    AssetMetadata,
    AssetMetadataCache,
    AssetMetadataError,
    AssetMetadataResolver,
    LedgerAssetMetadataResolver,
    refresh_asset_metadata,
)
from aa_stats.aggregation.balances import BalanceSnapshotter, SnapshotError, SnapshotResult
from aa_stats.aggregation.periods import (
    AggregationError,
    AggregationResult,
    PeriodAggregator,
    PeriodBucket,
    merge_flows,
)
from aa_stats.aggregation.rates import (
    ExchangeRateFeed,
    ExchangeRates,
    RateFeedError,
    get_usd_amount,
    parse_rates,
)
from aa_stats.aggregation.watermark import WatermarkError, WatermarkStore

__all__ = [
    "AggregationError",
    "AggregationResult",
    "AssetMetadata",
    "AssetMetadataCache",
    "AssetMetadataError",
    "AssetMetadataResolver",
    "BalanceSnapshotter",
    "ExchangeRateFeed",
    "ExchangeRates",
    "LedgerAssetMetadataResolver",
    "PeriodAggregator",
    "PeriodBucket",
    "RateFeedError",
    "SnapshotError",
    "SnapshotResult",
    "WatermarkError",
    "WatermarkStore",
    "get_usd_amount",
    "merge_flows",
    "parse_rates",
]
