"""Main entry point with CLI."""
import argparse
import asyncio
import logging
import sys
from typing import Any

import orjson

from pnr_tracker.config import Config, config
from pnr_tracker.errors import TrackerError
from pnr_tracker.logging_conf import setup_logging
from pnr_tracker.models import NotificationSettings, TrackedRecord
from pnr_tracker.service import TrackingService

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="PNR Status Tracker")
    parser.add_argument(
        "--log-level",
        default=None,
        help=f"Log level (default: {config.LOG_LEVEL})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the background scheduler")
    serve.add_argument(
        "--workers",
        type=int,
        default=None,
        help=f"Scheduler workers (default: {config.SCHEDULER_WORKERS})",
    )

    api = subparsers.add_parser("api", help="Run the control API with uvicorn")
    api.add_argument("--host", default="0.0.0.0")
    api.add_argument("--port", type=int, default=8000)

    track = subparsers.add_parser("track", help="Register a PNR for tracking")
    track.add_argument("pnr")
    track.add_argument("--owner", required=True, help="Owner id")
    track.add_argument("--email", default=None, help="Email address for notifications")
    track.add_argument("--push-endpoint", default=None, help="Webhook URL for push notifications")
    track.add_argument(
        "--interval",
        type=float,
        default=None,
        help=f"Seconds between checks (default: {config.CHECK_INTERVAL:.0f})",
    )

    check = subparsers.add_parser("check", help="Check one PNR now")
    check.add_argument("pnr")

    check_all = subparsers.add_parser("check-all", help="Check several PNRs now")
    check_all.add_argument("pnrs", nargs="+")
    check_all.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help=f"Concurrent checks (default: {config.BATCH_CONCURRENCY})",
    )

    history = subparsers.add_parser("history", help="Show status history of a PNR")
    history.add_argument("pnr")
    history.add_argument("--limit", type=int, default=20)
    history.add_argument("--before-id", type=int, default=None)

    return parser.parse_args(argv)


def print_json(data: Any) -> None:
    print(orjson.dumps(data, option=orjson.OPT_INDENT_2).decode())


async def serve(service: TrackingService) -> None:
    """Run the scheduler until interrupted."""
    await service.start()
    logger.info("Scheduler running, press Ctrl+C to stop")
    try:
        await asyncio.Event().wait()
    finally:
        await service.aclose()


async def run_command(args: argparse.Namespace, service: TrackingService) -> None:
    await service.initialize()
    try:
        if args.command == "track":
            record = await service.register_tracking(
                TrackedRecord(
                    pnr=args.pnr,
                    owner_id=args.owner,
                    check_interval=args.interval,
                    notifications=NotificationSettings(
                        email=args.email,
                        push_endpoint=args.push_endpoint,
                    ),
                )
            )
            print_json(record.model_dump(mode="json"))
        elif args.command == "check":
            outcome = await service.check_now(args.pnr)
            print_json(outcome.model_dump(mode="json"))
        elif args.command == "check-all":
            report = await service.check_all(args.pnrs, concurrency_limit=args.concurrency)
            print_json({**report.model_dump(mode="json"), "succeeded": report.succeeded, "failed": report.failed})
        elif args.command == "history":
            entries = await service.get_history(args.pnr, limit=args.limit, before_id=args.before_id)
            print_json([entry.model_dump(mode="json") for entry in entries])
    finally:
        await service.aclose()


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        Config.validate()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    if args.command == "api":
        import uvicorn

        uvicorn.run("pnr_tracker.api.main:app", host=args.host, port=args.port)
        return

    service = TrackingService.create()
    if args.command == "serve" and args.workers:
        service.scheduler.workers = args.workers
    try:
        if args.command == "serve":
            asyncio.run(serve(service))
        else:
            asyncio.run(run_command(args, service))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(1)
    except TrackerError as e:
        logger.error(f"{e.kind}: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
