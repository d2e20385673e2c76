"""Outbox worker: drain due tasks once or poll on an interval.

Handlers for task kinds are registered by importing the modules named with
``--handlers``; each module calls :func:`courier.outbox.register_handler` at
import time. Each batch prints its stats as one JSON line.
"""

from __future__ import annotations

import argparse
import importlib
import json
import logging
import os
import time

from dotenv import load_dotenv

from .app_logging import init_logging
from .config import get_settings
from .models.session import get_sessionmaker
from .outbox import OutboxDrainer

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Drain the Courier outbox")
    parser.add_argument("--once", action="store_true", help="Process a single batch and exit")
    parser.add_argument(
        "--limit",
        type=int,
        default=settings.outbox_batch_size,
        help="Maximum tasks per batch (OUTBOX_BATCH_SIZE)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=settings.outbox_poll_interval_seconds,
        help="Seconds between batches; 0 exits after one batch (OUTBOX_POLL_INTERVAL_SECONDS)",
    )
    parser.add_argument(
        "--handlers",
        dest="handler_modules",
        action="append",
        default=[m for m in os.getenv("OUTBOX_HANDLER_MODULES", "").split(",") if m.strip()],
        help="Module registering task handlers (may be specified multiple times)",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Override DATABASE_URL",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Parse CLI arguments and run the drainer."""

    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.limit < 1:
        parser.error("--limit must be a positive integer")

    init_logging()
    for module in args.handler_modules:
        importlib.import_module(module.strip())

    try:
        factory = get_sessionmaker(args.database_url)
    except RuntimeError as exc:
        parser.error(str(exc))
    drainer = OutboxDrainer(factory)

    while True:
        stats = drainer.run_once(args.limit)
        print(json.dumps(stats.as_dict()), flush=True)
        if args.once or args.poll_interval <= 0:
            return 0
        try:
            time.sleep(args.poll_interval)
        except KeyboardInterrupt:  # pragma: no cover - interactive stop
            logger.info("worker.stopped")
            return 0


if __name__ == "__main__":  # pragma: no cover - CLI execution
    raise SystemExit(main())
