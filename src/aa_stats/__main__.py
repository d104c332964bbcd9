"""Command line entry point: ``python -m aa_stats``."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys

from aa_stats.config import Settings, get_settings
from aa_stats.service import DAILY_MINUTES, HOURLY_MINUTES, StatsService

logger = logging.getLogger("aa_stats")

PERIODS = {"hourly": HOURLY_MINUTES, "daily": DAILY_MINUTES}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="aa_stats", description="Autonomous agent activity stats aggregator")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run aggregation, snapshots and the query API until interrupted")
    run.add_argument("--no-api", action="store_true", help="Do not serve the query API")

    aggregate = sub.add_parser("aggregate", help="Run one aggregation pass")
    aggregate.add_argument("--period", choices=sorted(PERIODS), default="hourly")

    sub.add_parser("snapshot", help="Take the balance snapshot of the current hour if not taken yet")

    reset = sub.add_parser("reset-stats", help="Delete stats rows and rewind watermarks so stats are rebuilt")
    reset.add_argument("--period", choices=sorted(PERIODS), action="append")
    return parser


async def _one_shot(settings: Settings, args: argparse.Namespace) -> int:
    service = StatsService(settings, enable_api=False)
    try:
        await service.initialize()
        if args.command == "aggregate":
            result = await service.aggregate(PERIODS[args.period])
            if result is not None:
                logger.info(
                    "Closed %d periods, wrote %d rows, watermark %d",
                    result.periods_closed,
                    result.rows_written,
                    result.watermark,
                )
        elif args.command == "snapshot":
            snapshot = await service.snapshot_balances()
            if snapshot is None:
                logger.info("Current hour already snapshotted")
        elif args.command == "reset-stats":
            for name in args.period or sorted(PERIODS):
                await service.reset_stats(PERIODS[name])
    finally:
        await service.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Settings: %s", settings.redacted_summary())

    if args.command == "run":
        service = StatsService(settings, enable_api=False if args.no_api else None)
        with contextlib.suppress(KeyboardInterrupt):
            asyncio.run(service.run())
        return 0
    return asyncio.run(_one_shot(settings, args))


if __name__ == "__main__":
    sys.exit(main())
