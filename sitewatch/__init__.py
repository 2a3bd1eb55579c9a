"""SiteWatch - HTTP(S) availability monitoring with uptime statistics."""

import argparse
import logging
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


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _load_config_or_exit(config_path: Optional[str]):
    from .config import ConfigError, load_config

    try:
        return load_config(config_path)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)


def _open_db_or_exit(db_path: str):
    from .database import DatabaseError, init_db

    try:
        return init_db(db_path)
    except DatabaseError as e:
        print(f"Error: {e}")
        sys.exit(1)


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - start the scheduler and the API server."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("SiteWatch %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .api import ApiError, ApiServer
    from .monitor import Monitor

    config = _load_config_or_exit(args.config)
    db_conn = _open_db_or_exit(config.database.path)
    logger.info("Database initialized at %s", config.database.path)

    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    monitor = Monitor(config.monitor, db_conn)
    api_server: Optional[ApiServer] = None

    try:
        if config.monitor.enabled:
            monitor.start()
        else:
            logger.info("Scheduler disabled; sweeps run only on demand")

        if config.api.enabled:
            try:
                api_server = ApiServer(config.api, db_conn, monitor)
                api_server.start()
            except ApiError as e:
                logger.error("Failed to start API server: %s", e)
                logger.warning("Continuing without API server")
                api_server = None

        logger.info("All components started, waiting for shutdown signal...")
        _shutdown_event.wait()

    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        logger.info("Shutting down components...")

        monitor.stop()

        if api_server is not None:
            api_server.stop()

        db_conn.close()
        logger.info("Shutdown complete")


def _cmd_sweep(args: argparse.Namespace) -> None:
    """Execute the sweep command - probe every active target once."""
    _setup_logging(args.verbose)

    from .database import DatabaseError
    from .monitor import Monitor

    config = _load_config_or_exit(args.config)
    db_conn = _open_db_or_exit(config.database.path)

    try:
        report = Monitor(config.monitor, db_conn).run_sweep()
    except DatabaseError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db_conn.close()

    for result in report.results:
        status = "UP  " if result.success else "DOWN"
        detail = result.error_message or ""
        print(f"{status} {result.target_id} {result.status_code} {result.response_time_ms}ms {detail}".rstrip())
    for target_id, error in report.failures.items():
        print(f"FAIL {target_id} {error}")

    print(
        f"\nRecorded {len(report.results)} checks, "
        f"{len(report.failures)} failed, {len(report.skipped)} inactive skipped"
    )

    if report.partial:
        sys.exit(1)


def _cmd_probe(args: argparse.Namespace) -> None:
    """Execute the probe command - check one target now and record it."""
    _setup_logging(args.verbose)

    from .database import DatabaseError
    from .models import TargetNotFoundError
    from .monitor import InvalidTargetError, Monitor

    config = _load_config_or_exit(args.config)
    db_conn = _open_db_or_exit(config.database.path)

    try:
        result = Monitor(config.monitor, db_conn).run_single_probe(args.target_id)
    except (TargetNotFoundError, InvalidTargetError, DatabaseError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db_conn.close()

    print(f"Status:   {result.status_code}")
    print(f"Success:  {result.success}")
    print(f"Latency:  {result.response_time_ms}ms")
    if result.error_message:
        print(f"Error:    {result.error_message}")


def _cmd_add_target(args: argparse.Namespace) -> None:
    """Execute the add-target command - register a new target."""
    from .database import DatabaseError, create_target

    if not args.url.startswith(("http://", "https://")):
        print("Error: URL must start with http:// or https://")
        sys.exit(1)

    config = _load_config_or_exit(args.config)
    db_conn = _open_db_or_exit(config.database.path)

    try:
        target = create_target(db_conn, url=args.url, name=args.name, active=not args.inactive)
    except DatabaseError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db_conn.close()

    print(target.id)


def _cmd_list_targets(args: argparse.Namespace) -> None:
    """Execute the list-targets command."""
    from .database import DatabaseError, list_targets

    config = _load_config_or_exit(args.config)
    db_conn = _open_db_or_exit(config.database.path)

    try:
        targets = list_targets(db_conn)
    except DatabaseError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db_conn.close()

    for target in targets:
        flag = "active  " if target.active else "inactive"
        print(f"{target.id}  {flag}  {target.name}  {target.url}")


def _cmd_status(args: argparse.Namespace) -> None:
    """Execute the status command - print uptime and latency for a target."""
    from datetime import UTC, datetime

    from .database import DatabaseError
    from .models import TargetNotFoundError, TimeRange
    from .status import get_site_status

    if not args.hours > 0:
        print("Error: --hours must be positive")
        sys.exit(1)

    try:
        time_range = TimeRange.last_hours(args.hours, datetime.now(UTC))
    except OverflowError:
        print(f"Error: --hours {args.hours:g} is too large")
        sys.exit(1)

    config = _load_config_or_exit(args.config)
    db_conn = _open_db_or_exit(config.database.path)

    try:
        status = get_site_status(db_conn, args.target_id, time_range)
    except (TargetNotFoundError, DatabaseError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db_conn.close()

    print(f"{status.target.name} ({status.target.url})")
    if status.last_check is None:
        print("Last check:   never")
    else:
        state = "UP" if status.last_check.success else "DOWN"
        print(f"Last check:   {state} at {status.last_check.checked_at.isoformat()}")
    if status.uptime_percentage is None:
        print(f"Uptime ({args.hours:g}h): no data")
    else:
        print(f"Uptime ({args.hours:g}h): {status.uptime_percentage:.2f}% over {len(status.checks)} checks")
        print(f"Avg latency:  {status.average_response_time_ms:.1f}ms")


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to YAML configuration file (default: built-in defaults)",
    )


def _add_verbose_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )


def main() -> None:
    """Main entry point for the sitewatch package."""
    parser = argparse.ArgumentParser(
        description="SiteWatch - HTTP(S) availability monitoring"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"sitewatch {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser(
        "run",
        help="Start the sweep scheduler and API server (default)",
    )
    _add_config_argument(run_parser)
    _add_verbose_argument(run_parser)
    run_parser.set_defaults(func=_cmd_run)

    sweep_parser = subparsers.add_parser(
        "sweep",
        help="Probe every active target once and record the results",
    )
    _add_config_argument(sweep_parser)
    _add_verbose_argument(sweep_parser)
    sweep_parser.set_defaults(func=_cmd_sweep)

    probe_parser = subparsers.add_parser(
        "probe",
        help="Probe a single target now and record the result",
    )
    probe_parser.add_argument("target_id", help="Identifier of the target to probe")
    _add_config_argument(probe_parser)
    _add_verbose_argument(probe_parser)
    probe_parser.set_defaults(func=_cmd_probe)

    add_parser = subparsers.add_parser(
        "add-target",
        help="Register a new target",
    )
    add_parser.add_argument("--name", required=True, help="Display name")
    add_parser.add_argument("--url", required=True, help="URL to monitor")
    add_parser.add_argument(
        "--inactive",
        action="store_true",
        help="Register the target without probing it in sweeps",
    )
    _add_config_argument(add_parser)
    add_parser.set_defaults(func=_cmd_add_target)

    list_parser = subparsers.add_parser(
        "list-targets",
        help="List registered targets",
    )
    _add_config_argument(list_parser)
    list_parser.set_defaults(func=_cmd_list_targets)

    status_parser = subparsers.add_parser(
        "status",
        help="Show uptime and latency for a target",
    )
    status_parser.add_argument("target_id", help="Identifier of the target")
    status_parser.add_argument(
        "--hours",
        type=float,
        default=24,
        help="Size of the trailing window in hours (default: 24)",
    )
    _add_config_argument(status_parser)
    status_parser.set_defaults(func=_cmd_status)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = None
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
