"""upstreamwatch - Upstream health watchdog for a reverse-proxy fleet."""

import argparse
import logging
import math
import signal
import sys
from threading import Event
from typing import Optional

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )
    # Keep connection pool chatter out of debug output
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _load_config_or_exit(args: argparse.Namespace):
    """Load configuration for a subcommand, exiting with status 1 on error.

    A missing file is only an error when --config was given explicitly.
    """
    from .config import ConfigError, load_config

    try:
        return load_config(args.config, required=args.config_explicit)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)


def _open_db_or_exit(path: str):
    """Open (and if needed initialize) the database, exiting on error."""
    from .database import DatabaseError, init_db

    try:
        return init_db(path)
    except DatabaseError as e:
        logger.error("Database error: %s", e)
        sys.exit(1)


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - start the watchdog and wait for a signal."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("upstreamwatch %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .watchdog import Watchdog

    # 1. Load configuration
    config = _load_config_or_exit(args)
    logger.info("Probe timeout %dms, boot delay %gs", config.watchdog.probe_timeout_ms, config.watchdog.boot_delay_seconds)

    # 2. Initialize database
    db_conn = _open_db_or_exit(config.database.path)
    logger.info("Database opened at %s", config.database.path)

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 4. Start watchdog
    watchdog = Watchdog(config.watchdog, db_conn)

    try:
        watchdog.start()
        logger.info("Watchdog running, waiting for shutdown signal...")

        # 5. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 6. Cleanup
        logger.info("Shutting down...")
        watchdog.stop()

        if watchdog.is_running():
            logger.warning("Watchdog thread still busy, leaving database connection open")
        else:
            db_conn.close()
            logger.info("Database connection closed")

        logger.info("Shutdown complete")


def _cmd_check(args: argparse.Namespace) -> None:
    """Execute the check command - run a single health check cycle now."""
    _setup_logging(args.verbose)

    from .watchdog import Watchdog

    config = _load_config_or_exit(args)
    db_conn = _open_db_or_exit(config.database.path)

    try:
        watchdog = Watchdog(config.watchdog, db_conn)
        watchdog.run_cycle()
        stats = watchdog.last_cycle
    finally:
        db_conn.close()

    if stats is None or (stats.failed and not stats.checked):
        sys.exit(1)


def _cmd_status(args: argparse.Namespace) -> None:
    """Execute the status command - print the latest status of every upstream."""
    from .database import DatabaseError, get_latest_health_checks
    from .models import HealthStatus

    config = _load_config_or_exit(args)
    db_conn = _open_db_or_exit(config.database.path)

    try:
        records = get_latest_health_checks(db_conn)
    except DatabaseError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db_conn.close()

    if not records:
        print("No health check data available yet.")
        return

    up_count = sum(1 for r in records if r.status is HealthStatus.UP)
    print(f"Total upstreams: {len(records)}  Up: {up_count}  Down: {len(records) - up_count}\n")
    print(f"{'KIND':<8} {'HOST':>6}  {'UPSTREAM':<28} {'STATUS':<6} {'RESPONSE':>9}  LAST CHECKED")
    for r in records:
        response = f"{r.response_ms}ms" if r.response_ms is not None else "-"
        print(
            f"{r.entity_kind.value:<8} {r.entity_id:>6}  {r.upstream_key:<28} "
            f"{r.status.value.upper():<6} {response:>9}  {r.checked_at.isoformat(timespec='seconds')}"
        )


def _cmd_clean(args: argparse.Namespace) -> None:
    """Execute the clean command - remove old health check records from the database."""
    from pathlib import Path

    from .database import DatabaseError, cleanup_old_health_checks, delete_all_health_checks
    from .settings import get_retention_days

    config = _load_config_or_exit(args)

    # Validate database exists
    if not Path(config.database.path).exists():
        print(f"Error: Database not found at {config.database.path}")
        sys.exit(1)

    retention_days = args.retention_days
    if retention_days is not None and (not math.isfinite(retention_days) or retention_days < 0):
        print("Error: retention-days must be a non-negative number")
        sys.exit(1)

    db_conn = _open_db_or_exit(config.database.path)
    try:
        if args.all:
            deleted = delete_all_health_checks(db_conn)
            print(f"Deleted all {deleted} health check records from database.")
        else:
            if retention_days is None:
                retention_days = get_retention_days(db_conn)
            deleted = cleanup_old_health_checks(db_conn, retention_days)
            print(f"Deleted {deleted} health check records older than {retention_days:g} days.")
    except DatabaseError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db_conn.close()


def _cmd_test_webhook(args: argparse.Namespace) -> None:
    """Execute the test-webhook command - send a sample notification."""
    _setup_logging(False)

    from .webhook import send_test_webhook

    config = _load_config_or_exit(args)
    print(f"Sending test notification to {args.url}...")

    if send_test_webhook(args.url, timeout=config.watchdog.webhook_timeout_seconds):
        print("✓ SUCCESS")
    else:
        print("✗ FAILED")
        sys.exit(1)


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to configuration file (default: config.yaml, optional)",
    )


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the upstreamwatch package."""
    from .config import DEFAULT_CONFIG_PATH

    parser = argparse.ArgumentParser(
        description="upstreamwatch - Upstream health watchdog for a reverse-proxy fleet"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"upstreamwatch {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Start the watchdog (default)",
    )
    _add_config_argument(run_parser)
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Check subcommand
    check_parser = subparsers.add_parser(
        "check",
        help="Run a single health check cycle immediately and exit",
    )
    _add_config_argument(check_parser)
    check_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    check_parser.set_defaults(func=_cmd_check)

    # Status subcommand
    status_parser = subparsers.add_parser(
        "status",
        help="Show the latest status of every upstream",
    )
    _add_config_argument(status_parser)
    status_parser.set_defaults(func=_cmd_status)

    # Clean subcommand
    clean_parser = subparsers.add_parser(
        "clean",
        help="Remove old health check records from the database",
    )
    _add_config_argument(clean_parser)
    clean_parser.add_argument(
        "--retention-days",
        type=float,
        help="Delete records older than this many days (overrides health_retention_days)",
    )
    clean_parser.add_argument(
        "--all",
        action="store_true",
        help="Delete all health check records (ignores retention)",
    )
    clean_parser.set_defaults(func=_cmd_clean)

    # Test-webhook subcommand
    test_webhook_parser = subparsers.add_parser(
        "test-webhook",
        help="Send a sample notification to a webhook URL",
    )
    _add_config_argument(test_webhook_parser)
    test_webhook_parser.add_argument("url", help="Webhook URL to test")
    test_webhook_parser.set_defaults(func=_cmd_test_webhook)

    args = parser.parse_args(argv)

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = None
        args.verbose = False
        args.func = _cmd_run

    args.config_explicit = args.config is not None
    if args.config is None:
        args.config = DEFAULT_CONFIG_PATH

    args.func(args)
