"""Change feed ingestion and cleanup jobs. Use --help for usage."""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from blobfeed.metrics import start_metrics_server
from blobfeed.runners import run_ingest, run_notify, run_sweep
from config.config import AppConfig, load_config
from core.errors.exceptions import ConfigurationError, PipelineError
from core.logging.setup import setup_logging
from core.logging.utilities import log_exception, log_startup_banner

# Project root directory (where .env file is located)
# __main__.py is at src/blobfeed/__main__.py, so root is 3 levels up
PROJECT_ROOT = Path(__file__).parent.parent.parent

# Placeholder logger until setup_logging() is called in main()
logger = logging.getLogger(__name__)

JOBS = ("ingest", "sweep", "notify")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="blobfeed",
        description="Blob change feed ingestion and metadata cleanup",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run one ingestion cycle
    python -m blobfeed ingest

    # Run ingestion every 5 minutes until Ctrl+C
    python -m blobfeed ingest --interval 300

    # Run the daily cleanup sweep on its own timer
    python -m blobfeed sweep --interval 86400

    # Forward a single Event Grid notification
    python -m blobfeed notify event.json
    cat event.json | python -m blobfeed notify
        """,
    )

    parser.add_argument("job", choices=JOBS, help="Which job to run")
    parser.add_argument(
        "payload_file",
        nargs="?",
        default=None,
        help="notify only: JSON payload file (default: read stdin)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml (default: $BLOBFEED_CONFIG or src/config/config.yaml)",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Run repeatedly every SECONDS until SIGINT/SIGTERM (ingest and sweep only)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Console logging level (default: from config, INFO)",
    )
    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Log directory path (default: from config or ./logs)",
    )
    parser.add_argument(
        "--log-to-stdout",
        action="store_true",
        help="Send all log output to stdout only, skipping file handlers. "
        "Can also be set via LOG_TO_STDOUT environment variable.",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Expose Prometheus metrics on this port",
    )

    args = parser.parse_args(argv)
    if args.payload_file and args.job != "notify":
        parser.error("payload_file is only accepted by the notify job")
    if args.interval is not None and args.job == "notify":
        parser.error("--interval is not supported by the notify job")
    if args.interval is not None and args.interval <= 0:
        parser.error("--interval must be positive")
    return args


def _setup_logging(args: argparse.Namespace, config: AppConfig) -> None:
    level_name = args.log_level or config.logging.level or "INFO"
    log_level = getattr(logging, level_name.upper(), logging.INFO)

    log_to_stdout = args.log_to_stdout or os.getenv("LOG_TO_STDOUT", "false").lower() in (
        "true",
        "1",
        "yes",
    )
    log_dir = Path(args.log_dir or config.logging.log_dir or "logs")

    setup_logging(
        name="blobfeed",
        job=args.job,
        log_dir=log_dir,
        json_format=config.logging.json_format,
        console_level=log_level,
        log_to_stdout=log_to_stdout,
    )


def read_payloads(payload_file: str | None) -> list[Any]:
    """Load notification payloads; a JSON array (Event Grid batch) yields one per element."""
    if payload_file:
        text = Path(payload_file).read_text(encoding="utf-8")
    else:
        text = sys.stdin.read()
    data = json.loads(text)
    return data if isinstance(data, list) else [data]


def setup_signal_handlers(loop: asyncio.AbstractEventLoop, shutdown_event: asyncio.Event) -> None:
    """First signal stops the interval loop; a second cancels everything.

    Note: Signal handlers not supported on Windows - KeyboardInterrupt used instead."""

    def handle_signal(sig):
        logger.info("Received signal, initiating graceful shutdown", extra={"signal": sig.name})
        if not shutdown_event.is_set():
            shutdown_event.set()
        else:
            logger.warning("Received second signal, forcing immediate shutdown...")
            for task in asyncio.all_tasks(loop):
                task.cancel()

    if sys.platform == "win32":
        logger.debug("Signal handlers not supported on Windows, using KeyboardInterrupt")
        return

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))


async def run_job(args: argparse.Namespace, config: AppConfig) -> None:
    shutdown_event = asyncio.Event()
    setup_signal_handlers(asyncio.get_running_loop(), shutdown_event)

    if args.job == "ingest":
        await run_ingest(config, shutdown_event, interval_seconds=args.interval)
    elif args.job == "sweep":
        await run_sweep(config, shutdown_event, interval_seconds=args.interval)
    else:
        payloads = read_payloads(args.payload_file)
        await run_notify(config, payloads)


def main(argv: list[str] | None = None) -> int:
    load_dotenv(PROJECT_ROOT / ".env")
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ConfigurationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    _setup_logging(args, config)

    metrics_port = None
    if args.metrics_port:
        metrics_port = start_metrics_server(args.metrics_port)

    log_startup_banner(
        logger,
        title="Blob Change Feed Pipeline",
        job=args.job,
        partition_id=config.ingestion.partition_id,
        cursor_store=config.cursor_store.type,
        repository=config.repository.type,
        publisher=config.publisher.type,
        interval_seconds=args.interval,
        metrics_port=metrics_port,
    )

    try:
        asyncio.run(run_job(args, config))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down")
        return 0
    except (PipelineError, OSError, ValueError) as e:
        log_exception(logger, e, f"Job '{args.job}' failed", include_traceback=False)
        return 1

    logger.info(f"Job '{args.job}' finished")
    return 0


if __name__ == "__main__":
    sys.exit(main())
