"""Storage layer - Database schemas and repositories."""

from aa_stats.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
)
from aa_stats.storage.models import (
    STATS_TABLES,
    AABalanceHourlyModel,
    AAStatsDailyModel,
    AAStatsHourlyModel,
    Base,
    LedgerBase,
)
from aa_stats.storage.repos import (
    BalanceSnapshotDTO,
    BalanceSnapshotRepository,
    LedgerRepository,
    StatsRepository,
    StatsRowDTO,
)

__all__ = [
    "AABalanceHourlyModel",
    "AAStatsDailyModel",
    "AAStatsHourlyModel",
    "BalanceSnapshotDTO",
    "BalanceSnapshotRepository",
    "Base",
    "DatabaseManager",
    "LedgerBase",
    "LedgerRepository",
    "STATS_TABLES",
    "StatsRepository",
    "StatsRowDTO",
    "create_async_db_engine",
    "create_async_session_factory",
]
