"""
CLI entry point for the crawl dispatcher.

Commands:
  run    lease and process queue items until interrupted
  stats  print queue counts and a short dispatcher sample
  sweep  hard-delete soft-deleted job trees past the retention window
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any, Dict, Optional

from ..config.settings import load_settings
from ..core.types import ProgressEvent, ProgressEventType
from ..engine import create_engine
from ..utils.logging import log_job_event, setup_engine_logger


async def run_worker(
    environment: Optional[str] = None,
    worker_id: Optional[str] = None,
    log_level: str = "INFO",
    config_overrides: Optional[Dict[str, Any]] = None,
):
    """
    Run the dispatcher with the given configuration.

    Args:
        environment: Environment name (dev/staging/prod)
        worker_id: Custom dispatcher ID
        log_level: Logging level
        config_overrides: Configuration overrides
    """
    settings = load_settings(environment=environment, worker_id=worker_id, **(config_overrides or {}))
    event_logger = setup_engine_logger(
        "crawl_engine.worker",
        level=log_level,
        json_logs=settings.json_logs,
        environment=settings.environment,
        worker_id=settings.worker_id,
    )
    logger = logging.getLogger(__name__)

    engine = create_engine(settings)

    async def log_lifecycle(event: ProgressEvent) -> None:
        if event.event_type != ProgressEventType.PROGRESS_UPDATE:
            log_job_event(
                event_logger, event.event_type.value, event.job_id, root_id=event.root_id, message=event.message
            )

    engine.publisher.subscribe(log_lifecycle)
    dispatcher = engine.dispatcher
    try:
        await engine.start()
        logger.info(f"Starting dispatcher with environment: {settings.environment}")
        logger.info(
            f"Dispatch configuration: batch_size={settings.batch_size}, max_workers={settings.max_workers}, "
            f"per_admin_limit={settings.per_admin_limit}, per_server_limit={settings.per_server_limit}"
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(dispatcher.shutdown()))

        dispatcher._main_task = asyncio.create_task(dispatcher.run())
        await dispatcher._main_task

    except asyncio.CancelledError:
        logger.info("Dispatcher cancelled, shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        await dispatcher.shutdown()
        await engine.stop()


async def show_stats(environment: Optional[str] = None, sample_seconds: float = 5.0):
    """Print queue counts, then dispatcher statistics from a short sample run"""
    engine = None
    try:
        settings = load_settings(environment=environment)
        engine = create_engine(settings)
        await engine.start()

        print("Queue:")
        for status, count in (await engine.control.queue_counts()).items():
            print(f"  {status}: {count}")

        print(f"\nCollecting dispatcher statistics ({sample_seconds:.0f} second sample)...")
        dispatcher = engine.dispatcher
        dispatcher._main_task = asyncio.create_task(dispatcher.run())
        try:
            await asyncio.wait_for(asyncio.shield(dispatcher._main_task), timeout=sample_seconds)
        except asyncio.TimeoutError:
            pass
        await dispatcher.shutdown()

        stats = dispatcher.get_stats()
        print("\nDispatcher Statistics:")
        print(f"  Worker ID: {stats['worker_id']}")
        print(f"  Uptime: {stats['uptime_seconds']:.1f}s")
        print(f"  Items Leased: {stats['items_leased']}")
        print(f"  Items Processed: {stats['items_processed']}")
        print(f"  Items Reclaimed: {stats['items_reclaimed']}")
        print(f"  Escalations: {stats['escalations']}")

        if stats["outcomes"]:
            print("\nOutcomes:")
            for outcome, count in stats["outcomes"].items():
                print(f"  {outcome}: {count}")
        if stats["errors_by_type"]:
            print("\nErrors by Type:")
            for error_type, count in stats["errors_by_type"].items():
                print(f"  {error_type}: {count}")

    except Exception as e:
        print(f"Statistics collection failed: {e}")
        sys.exit(1)
    finally:
        if engine is not None:
            await engine.stop()


async def run_sweep(environment: Optional[str] = None, retention_days: Optional[int] = None):
    """Run one retention sweep"""
    engine = None
    try:
        settings = load_settings(environment=environment, retention_days=retention_days)
        engine = create_engine(settings)
        await engine.start()
        result = await engine.sweeper().sweep()
        print(
            f"Removed {result['jobs']} jobs in {result['trees']} trees "
            f"({result['queue_items']} queue items, {result['artifacts']} artifacts)"
        )
    except Exception as e:
        print(f"Retention sweep failed: {e}")
        sys.exit(1)
    finally:
        if engine is not None:
            await engine.stop()


def main():
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        description="Crawl engine dispatcher",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m app.crawl_engine.worker run --environment dev
  python -m app.crawl_engine.worker run --worker-id dispatcher-1 --batch-size 20
  python -m app.crawl_engine.worker stats --environment prod
  python -m app.crawl_engine.worker sweep --retention-days 7
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run the dispatcher")
    run_parser.add_argument("--environment", "-e", help="Environment (dev/staging/prod)")
    run_parser.add_argument("--worker-id", help="Custom dispatcher ID")
    run_parser.add_argument(
        "--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level"
    )
    run_parser.add_argument("--batch-size", type=int, help="Override lease batch size")
    run_parser.add_argument("--max-workers", type=int, help="Override concurrent item limit")
    run_parser.add_argument("--poll-interval", type=float, help="Override poll interval in seconds")

    stats_parser = subparsers.add_parser("stats", help="Show queue and dispatcher statistics")
    stats_parser.add_argument("--environment", "-e", help="Environment")
    stats_parser.add_argument("--sample-seconds", type=float, default=5.0, help="Sample duration")

    sweep_parser = subparsers.add_parser("sweep", help="Hard-delete expired soft-deleted jobs")
    sweep_parser.add_argument("--environment", "-e", help="Environment")
    sweep_parser.add_argument("--retention-days", type=int, help="Override retention window")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        if args.command == "run":
            config_overrides: Dict[str, Any] = {
                "batch_size": args.batch_size,
                "max_workers": args.max_workers,
                "poll_interval_seconds": args.poll_interval,
            }
            asyncio.run(
                run_worker(
                    environment=args.environment,
                    worker_id=args.worker_id,
                    log_level=args.log_level,
                    config_overrides=config_overrides,
                )
            )
        elif args.command == "stats":
            asyncio.run(show_stats(environment=args.environment, sample_seconds=args.sample_seconds))
        elif args.command == "sweep":
            asyncio.run(run_sweep(environment=args.environment, retention_days=args.retention_days))
        else:
            print(f"Unknown command: {args.command}")
            sys.exit(1)
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
