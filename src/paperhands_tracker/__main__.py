"""Command-line entry point.

Usage:
    python -m paperhands_tracker serve            # HTTP API + job runner
    python -m paperhands_tracker worker           # job runner only
    python -m paperhands_tracker analyze ADDRESS [--days N]
    python -m paperhands_tracker init-db
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys

from redis.asyncio import Redis

from paperhands_tracker.api.server import create_app, start_site
from paperhands_tracker.config import Settings, get_settings
from paperhands_tracker.pipeline import AnalysisPipeline
from paperhands_tracker.progress import ProgressBus, ProgressLine, default_progress_enabled
from paperhands_tracker.scheduler.queue import JobQueue
from paperhands_tracker.scheduler.runner import JobRunner
from paperhands_tracker.storage.database import DatabaseManager

logger = logging.getLogger("paperhands_tracker")


def _build_queue(settings: Settings, db: DatabaseManager) -> JobQueue:
    s = settings.scheduler
    return JobQueue(
        db,
        max_concurrent=s.max_concurrent,
        result_ttl_hours=s.result_ttl_hours,
        cooldown_enabled=s.cooldown_enabled,
        cooldown_minutes=s.cooldown_minutes,
        max_pipeline_minutes=s.max_pipeline_minutes,
        store_retry_attempts=s.store_retry_attempts,
    )


async def _wait_for_shutdown() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    await stop.wait()


async def run_service(settings: Settings, *, serve_http: bool) -> None:
    """Run the job runner (and optionally the HTTP API) until signalled."""
    settings.validate_requirements(command="serve" if serve_http else "worker")
    logger.info("Configuration: %s", json.dumps(settings.redacted_summary()))

    redis = Redis.from_url(settings.redis.url)
    db = DatabaseManager(settings.database.url)
    pipeline = AnalysisPipeline.from_settings(settings, redis=redis)
    runner = JobRunner(
        _build_queue(settings, db),
        pipeline,
        drain_interval_seconds=settings.scheduler.drain_interval_seconds,
    )
    app_runner = None
    try:
        await runner.start()
        if serve_http:
            app = create_app(
                runner,
                default_lookback_days=settings.analysis.default_lookback_days,
                max_lookback_days=settings.analysis.max_lookback_days,
                leaderboard_limit=settings.api.leaderboard_limit,
            )
            app_runner = await start_site(app, host=settings.api.host, port=settings.api.port)
        await _wait_for_shutdown()
    finally:
        logger.info("Shutting down...")
        if app_runner is not None:
            await app_runner.cleanup()
        await runner.stop()
        await pipeline.close()
        await redis.aclose()
        await db.dispose_async()


async def run_analyze(settings: Settings, address: str, days: int | None) -> int:
    settings.validate_requirements(command="analyze")
    lookback_days = days or settings.analysis.default_lookback_days

    redis = Redis.from_url(settings.redis.url)
    pipeline = AnalysisPipeline.from_settings(settings, redis=redis)
    line = ProgressLine(enabled=default_progress_enabled())
    try:
        result = await pipeline.analyze(address, lookback_days, progress=ProgressBus(line))
    except Exception as e:
        line.close(final_line=f"failed: {e}")
        raise
    finally:
        await pipeline.close()
        await redis.aclose()
    line.close(final_line=f"done: {result.total_events} regret events, ${result.total_regret:,.2f} total regret")
    sys.stdout.write(json.dumps(result.to_dict(), indent=2) + "\n")
    return 0


async def run_init_db(settings: Settings) -> None:
    db = DatabaseManager(settings.database.url)
    try:
        await db.init_schema_async()
        logger.info("Database schema created")
    finally:
        await db.dispose_async()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="paperhands_tracker",
        description="Measure how much value a Solana wallet left on the table by selling early.",
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("serve", help="Run the HTTP API and the job runner")
    subparsers.add_parser("worker", help="Run the job runner only (drain + stale reclaim)")

    analyze_parser = subparsers.add_parser("analyze", help="Analyse one wallet and print JSON")
    analyze_parser.add_argument("address", help="Base58 wallet address")
    analyze_parser.add_argument("--days", type=int, default=None, help="Lookback window in days")

    subparsers.add_parser("init-db", help="Create tables without running migrations")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        if args.command == "serve":
            asyncio.run(run_service(settings, serve_http=True))
        elif args.command == "worker":
            asyncio.run(run_service(settings, serve_http=False))
        elif args.command == "analyze":
            return asyncio.run(run_analyze(settings, args.address, args.days))
        elif args.command == "init-db":
            asyncio.run(run_init_db(settings))
    except KeyboardInterrupt:
        return 130
    except ValueError as e:
        logger.error("%s", e)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
