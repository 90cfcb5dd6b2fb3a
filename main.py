#!/usr/bin/env python3
"""
Feed Sweeper command line.

Runs the HTTP server, or a single operation against the configured database:
sweeping one feed or all due feeds, draining the article queue, fetching a
single article, re-enabling a disabled feed, seeding feeds from feeds.yaml,
showing status, or looping sweep-all on the configured interval.
"""

import asyncio
import json
import sys
import time
from typing import Any, Awaitable, Callable

import argparse

from config import config, get_logger
from errors import PipelineError
from pipeline import FeedPipeline
from server import run_server
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("main")
init_telemetry("feed-sweeper")


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _with_pipeline(action: Callable[[FeedPipeline], Awaitable[Any]]) -> Any:
    async with FeedPipeline() as pipeline:
        return await action(pipeline)


async def run_sweep(feed_id: str, force: bool) -> bool:
    async def _action(pipeline: FeedPipeline) -> bool:
        outcome = await pipeline.sweeper.sweep(feed_id, force=force)
        _print_json(outcome.to_dict())
        return outcome.ok
    return await _with_pipeline(_action)


async def run_sweep_all(force: bool) -> bool:
    async def _action(pipeline: FeedPipeline) -> bool:
        result = await pipeline.cron.sweep_all(force=force)
        _print_json(result.to_dict())
        return result.ok
    return await _with_pipeline(_action)


async def run_process_queue(limit: int) -> bool:
    async def _action(pipeline: FeedPipeline) -> bool:
        result = await pipeline.processor.process_queue(limit)
        _print_json(result.to_dict())
        return result.ok
    return await _with_pipeline(_action)


async def run_fetch(article_id: str, force: bool) -> bool:
    async def _action(pipeline: FeedPipeline) -> bool:
        result = await pipeline.processor.fetch_one(article_id, force=force)
        _print_json(result.to_dict())
        return result.outcome != "failed"
    return await _with_pipeline(_action)


async def run_enable(feed_id: str) -> bool:
    async def _action(pipeline: FeedPipeline) -> bool:
        feed = await pipeline.sweeper.enable(feed_id)
        _print_json(feed.to_dict())
        return True
    return await _with_pipeline(_action)


async def run_seed() -> bool:
    async def _action(pipeline: FeedPipeline) -> bool:
        counts = await pipeline.seed_feeds()
        logger.info(f"🌱 Seeded feeds: {counts['created']} created, {counts['updated']} updated")
        return True
    return await _with_pipeline(_action)


async def run_status() -> bool:
    async def _action(pipeline: FeedPipeline) -> bool:
        status = await pipeline.status()
        print_status(status)
        return True
    return await _with_pipeline(_action)


def print_status(status: dict) -> None:
    """Print formatted status information."""
    print(f"\n📊 Feed Sweeper Status")
    print(f"⏰ {status['timestamp']}")
    print(f"\n📡 Feeds ({len(status['feeds'])}):")
    for feed in status['feeds']:
        health = feed['health']
        marker = "⛔" if health['status'] == 'disabled' else ("⚠️" if health['status'] in ('warning', 'error') else "✅")
        print(f"   {marker} {feed['id']} [{health['status']}] score={health['reliabilityScore']} "
              f"failures={health['consecutiveFailures']} last={feed['lastFetchedAt'] or 'never'}")
        if health['lastError']:
            print(f"      └ {health['lastError']}")
    print(f"\n📰 Articles:")
    for lifecycle, count in sorted(status['articles'].items()):
        print(f"   {lifecycle}: {count}")


@trace_span("loop.iteration", tracer_name="main")
async def _loop_iteration(pipeline: FeedPipeline) -> None:
    result = await pipeline.cron.sweep_all()
    logger.info(
        f"🔁 Sweep-all: {result.feeds} of {result.feeds_scanned} feeds swept, {result.total_created} created, "
        f"{result.total_processed} processed, {result.failed} failed in {result.duration_ms}ms"
    )


async def run_loop() -> None:
    """Sweep all due feeds every FETCH_INTERVAL_MINUTES until interrupted."""
    interval = config.FETCH_INTERVAL_MINUTES * 60
    logger.info(f"🕐 Loop mode: sweeping every {config.FETCH_INTERVAL_MINUTES} minutes")
    async with FeedPipeline() as pipeline:
        while True:
            started = time.monotonic()
            try:
                await _loop_iteration(pipeline)
            except PipelineError as e:
                logger.error(f"❌ Sweep-all iteration failed: {e}")
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(0.0, interval - elapsed))


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description='Feed Sweeper')
    subparsers = parser.add_subparsers(dest='mode', required=True)

    serve = subparsers.add_parser('serve', help='Run the HTTP server')
    serve.add_argument('--host', type=str, help='Bind address (default SERVER_HOST)')
    serve.add_argument('--port', type=int, help='Port (default SERVER_PORT)')

    sweep = subparsers.add_parser('sweep', help='Sweep a single feed')
    sweep.add_argument('feed_id')
    sweep.add_argument('--force', action='store_true', help='Ignore the interval and caches')

    sweep_all = subparsers.add_parser('sweep-all', help='Sweep every due feed, then drain the queue')
    sweep_all.add_argument('--force', action='store_true', help='Sweep every active feed')

    queue = subparsers.add_parser('process-queue', help='Fetch and score queued articles')
    queue.add_argument('--limit', type=int, default=config.PROCESS_QUEUE_DEFAULT_LIMIT)

    fetch = subparsers.add_parser('fetch', help='Fetch and score one article')
    fetch.add_argument('article_id')
    fetch.add_argument('--force', action='store_true', help='Refetch even if content is stored')

    enable = subparsers.add_parser('enable', help='Re-enable a disabled feed')
    enable.add_argument('feed_id')

    subparsers.add_parser('seed', help='Register feeds from feeds.yaml')
    subparsers.add_parser('status', help='Show feed health and article counts')
    subparsers.add_parser('loop', help='Sweep all feeds on FETCH_INTERVAL_MINUTES')

    args = parser.parse_args()
    logger.debug(f"Configuration: {config.get_config_summary()}")

    try:
        if args.mode == 'serve':
            run_server(args.host, args.port)
            return
        if args.mode == 'loop':
            asyncio.run(run_loop())
            return

        if args.mode == 'sweep':
            success = asyncio.run(run_sweep(args.feed_id, args.force))
        elif args.mode == 'sweep-all':
            success = asyncio.run(run_sweep_all(args.force))
        elif args.mode == 'process-queue':
            success = asyncio.run(run_process_queue(args.limit))
        elif args.mode == 'fetch':
            success = asyncio.run(run_fetch(args.article_id, args.force))
        elif args.mode == 'enable':
            success = asyncio.run(run_enable(args.feed_id))
        elif args.mode == 'seed':
            success = asyncio.run(run_seed())
        else:
            success = asyncio.run(run_status())
        sys.exit(0 if success else 1)

    except KeyboardInterrupt:
        logger.info("👋 Feed Sweeper shutting down")
    except PipelineError as e:
        logger.error(f"💥 {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
