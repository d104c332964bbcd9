"""HTTP query API."""

from aa_stats.api.server import API_PREFIX, InvalidRequest, StatsApi

__all__ = ["API_PREFIX", "InvalidRequest", "StatsApi"]
