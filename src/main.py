#!/usr/bin/env python3

import argparse
import json
import logging
import os
import signal
import sys
from dataclasses import asdict
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from config.settings import SyncSettings  # noqa: E402
from services.sync_service import SyncService, loopback_transfer  # noqa: E402
from services.worker import SyncWorker  # noqa: E402

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="LayerSync - Role-aware data synchronization"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose debug logging"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the HTTP API")
    serve.add_argument(
        "--host",
        type=str,
        default=os.getenv("LAYERSYNC_HOST", "0.0.0.0"),
        help="Bind address (default: 0.0.0.0)"
    )
    serve.add_argument(
        "-p", "--port",
        type=int,
        default=int(os.getenv("LAYERSYNC_PORT", "3001")),
        help="HTTP port (default: 3001)"
    )

    worker = commands.add_parser("worker", help="Drain the sync queue")
    worker.add_argument(
        "-w", "--workers",
        type=int,
        default=None,
        help="Number of worker threads (default: LAYERSYNC_WORKERS)"
    )
    worker.add_argument(
        "-i", "--poll-interval",
        type=float,
        default=None,
        help="Idle polling interval in seconds (default: LAYERSYNC_POLL_INTERVAL)"
    )

    stats = commands.add_parser("stats", help="Print mission completion statistics")
    stats.add_argument("mission_id", help="Mission to report on")
    stats.add_argument(
        "-d", "--days",
        type=int,
        default=None,
        help="History window in days (default: LAYERSYNC_HISTORY_DAYS)"
    )

    return parser.parse_args(argv)


def run_serve(service: SyncService, args) -> None:
    import uvicorn

    from api.main import create_app

    uvicorn.run(create_app(service), host=args.host, port=args.port)


def run_worker(service: SyncService, args) -> None:
    worker = SyncWorker(
        service.queue,
        transfer=loopback_transfer,
        workers=args.workers or service.settings.workers,
        poll_interval=args.poll_interval or service.settings.poll_interval,
    )

    def signal_handler(signum, frame):
        worker.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    print("LayerSync worker running. Press Ctrl+C to stop")
    worker.run_forever()
    print(f"LayerSync worker stopped after {worker.processed} entries")


def run_stats(service: SyncService, args) -> None:
    days = service.settings.history_days if args.days is None else args.days
    report = {
        "missionId": args.mission_id,
        **service.tracker.get_completion_stats(args.mission_id),
        "history": [asdict(b) for b in service.tracker.get_completion_history(args.mission_id, days)],
    }
    print(json.dumps(report, indent=2))


COMMANDS = {
    "serve": run_serve,
    "worker": run_worker,
    "stats": run_stats,
}


def main(argv=None):
    args = parse_args(argv)
    settings = SyncSettings.from_env()

    logging.basicConfig(level=settings.log_level, format='%(levelname)s: %(message)s')
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        with SyncService.from_env() as service:
            COMMANDS[args.command](service, args)
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
