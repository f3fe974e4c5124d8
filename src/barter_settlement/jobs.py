"""Scheduler entry point for the timeout sweeps.

Run from cron (or a k8s CronJob) instead of going through the HTTP job
endpoints:

    barter-sweep auto-cancel
    barter-sweep auto-complete
    barter-sweep all --batch-size 500

Prints the sweep result as JSON and exits non-zero if any item errored.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from barter_settlement.config import get_settings
from barter_settlement.infrastructure.database.engine import close_db, get_session_factory
from barter_settlement.infrastructure.notifications import build_default_collaborators
from barter_settlement.infrastructure.redis_client import close_redis, init_redis
from barter_settlement.logging_config import get_logger, setup_logging
from barter_settlement.services.automation import AutoCancelSweeper, AutoCompleteSweeper

logger = get_logger(__name__)

SWEEPS = ("auto-cancel", "auto-complete")


async def run_sweeps(names: list[str], batch_size: int | None = None) -> dict[str, dict]:
    settings = get_settings()
    if batch_size is not None:
        settings = settings.model_copy(update={"sweep_batch_size": batch_size})

    redis = None
    try:
        redis = await init_redis()
    except Exception as exc:
        logger.warning("sweep.redis_unavailable", error=str(exc))
    sinks = build_default_collaborators(redis, settings.activity_feed_max_length)

    factory = get_session_factory()
    results: dict[str, dict] = {}
    try:
        for name in names:
            sweeper_cls = AutoCancelSweeper if name == "auto-cancel" else AutoCompleteSweeper
            result = await sweeper_cls(factory, settings, *sinks).run()
            results[name] = result.to_dict()
    finally:
        await close_db()
        await close_redis()
    return results


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="barter-sweep", description="Run the swap timeout sweeps"
    )
    parser.add_argument("sweep", choices=[*SWEEPS, "all"], help="Which sweep to run")
    parser.add_argument(
        "--batch-size", type=int, default=None, help="Override SWEEP_BATCH_SIZE"
    )
    parser.add_argument("--log-level", default=None, help="Override APP_LOG_LEVEL")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(
        log_level=args.log_level or settings.app_log_level,
        json_logs=not settings.is_development,
    )

    names = list(SWEEPS) if args.sweep == "all" else [args.sweep]
    results = asyncio.run(run_sweeps(names, args.batch_size))
    print(json.dumps(results, indent=2, default=str))
    return 1 if any(r["errors"] for r in results.values()) else 0


if __name__ == "__main__":
    sys.exit(main())
