"""Availability probes, concurrent sweeps and the interval scheduler."""

import logging
import sqlite3
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import UTC, datetime
from threading import Event, Thread
from urllib.parse import urlparse

import requests

from .config import MonitorConfig
from .database import get_target, insert_check, list_targets
from .models import CheckResult, SiteStatus, SweepReport, Target, TimeRange
from .status import get_site_status, get_uptime_percentage

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 5000

# Pool size used when run_sweep() is called without an explicit bound.
DEFAULT_MAX_WORKERS = 10

USER_AGENT = "SiteWatch/0.1"


class InvalidTargetError(ValueError):
    """Raised when a target's URL cannot be probed at all."""

    pass


def _is_success_status(status_code: int) -> bool:
    """Return True if the status code is in the 2xx range."""
    return 200 <= status_code < 300


def _describe_fault(error: BaseException) -> str:
    """Return a non-empty description of a transport fault."""
    message = str(error).strip()
    return message or type(error).__name__


def _validate_target_url(target: Target) -> None:
    parsed = urlparse(target.url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise InvalidTargetError(
            f"Target '{target.name}' has an invalid URL '{target.url}' (must be an absolute http(s) URL)"
        )


def check_target(target: Target, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> CheckResult:
    """Probe a target once and classify the outcome.

    Exactly one GET is issued. Any HTTP status is a valid outcome; transport
    faults (timeout, DNS, refused connection, TLS) are returned as a failed
    result with status code 0 instead of being raised. The body is never read.
    Once ``timeout_ms`` has elapsed the probe is a failure, even if the server
    would still have answered; a request left in flight is abandoned to its
    daemon thread.

    Args:
        target: Target to probe.
        timeout_ms: Total time allowed for the response, in milliseconds.

    Returns:
        CheckResult stamped with the probe start instant.

    Raises:
        InvalidTargetError: If the target URL is not an absolute http(s) URL.
    """
    _validate_target_url(target)

    timeout_s = timeout_ms / 1000
    outcome: dict = {}

    def fetch() -> None:
        try:
            with requests.get(
                target.url,
                timeout=timeout_s,
                stream=True,
                headers={"User-Agent": USER_AGENT},
            ) as response:
                outcome["status_code"] = response.status_code
        except Exception as e:
            outcome["error"] = e

    checked_at = datetime.now(UTC)
    start = time.monotonic()

    # requests' timeout applies per socket operation; the join enforces the total deadline.
    worker = Thread(target=fetch, daemon=True, name=f"probe-{target.id}")
    worker.start()
    worker.join(timeout=timeout_s)
    elapsed_ms = int((time.monotonic() - start) * 1000)

    error = outcome.get("error")
    if worker.is_alive() or elapsed_ms > timeout_ms:
        status_code = 0
        success = False
        error_message = f"Timed out after {timeout_ms} ms"
        logger.debug("Probe of %s exceeded %d ms", target.url, timeout_ms)
    elif error is not None:
        if not isinstance(error, (requests.RequestException, OSError)):
            raise error
        status_code = 0
        success = False
        error_message = _describe_fault(error)
        logger.debug("Transport fault probing %s: %s", target.url, error_message)
    else:
        status_code = outcome["status_code"]
        success = _is_success_status(status_code)
        error_message = None if success else f"Received status code {status_code}"

    result = CheckResult(
        id=uuid.uuid4().hex,
        target_id=target.id,
        checked_at=checked_at,
        status_code=status_code,
        response_time_ms=elapsed_ms,
        success=success,
        error_message=error_message,
    )
    logger.debug(
        "%s: %s status=%d (%dms)",
        target.name,
        "UP" if success else "DOWN",
        status_code,
        elapsed_ms,
    )
    return result


def _probe_and_record(conn: sqlite3.Connection, target: Target, timeout_ms: int) -> CheckResult:
    """Probe one target and append its result; the target is done only once recorded."""
    result = check_target(target, timeout_ms=timeout_ms)
    insert_check(conn, result)
    return result


def run_sweep(
    conn: sqlite3.Connection,
    targets: list[Target],
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> SweepReport:
    """Probe every active target concurrently and record each result.

    Inactive targets are skipped without being probed or recorded. At most
    ``max_workers`` probes are in flight at once. A target whose check cannot
    be recorded (or whose URL is malformed) is reported in
    ``SweepReport.failures``; the remaining targets are unaffected.

    Returns:
        SweepReport, once every dispatched probe has completed.
    """
    started_at = datetime.now(UTC)
    active = [target for target in targets if target.active]
    skipped = [target.id for target in targets if not target.active]

    results: list[CheckResult] = []
    failures: dict[str, str] = {}

    if active:
        pool_size = max(1, min(max_workers, len(active)))
        with ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="probe") as executor:
            futures = {executor.submit(_probe_and_record, conn, target, timeout_ms): target for target in active}

            for future in as_completed(futures):
                target = futures[future]
                try:
                    results.append(future.result())
                except Exception as e:
                    logger.error("Failed to check %s: %s", target.name, e)
                    failures[target.id] = str(e)

    report = SweepReport(
        started_at=started_at,
        finished_at=datetime.now(UTC),
        results=results,
        skipped=skipped,
        failures=failures,
    )
    logger.info(
        "Sweep finished: %d recorded (%d up), %d failed, %d inactive skipped",
        len(results),
        sum(1 for r in results if r.success),
        len(failures),
        len(skipped),
    )
    return report


class Monitor:
    """Engine facade over the registry and check log, plus an interval scheduler.

    The scheduler runs one sweep immediately and then one every
    ``config.interval`` seconds on a single background thread, so its sweeps
    never overlap each other.

    Example:
        monitor = Monitor(config.monitor, db_conn)
        report = monitor.run_sweep()
        status = monitor.get_status(target_id)
    """

    def __init__(self, config: MonitorConfig, db_conn: sqlite3.Connection) -> None:
        """Initialize the monitor.

        Args:
            config: Probe timeout, pool size and scheduler interval.
            db_conn: Database connection holding targets and checks.
        """
        self._config = config
        self._db_conn = db_conn
        self._stop_event = Event()
        self._thread: Thread | None = None

    def run_sweep(self) -> SweepReport:
        """Run one sweep over all currently registered targets.

        Raises:
            DatabaseError: If the target list cannot be read.
        """
        targets = list_targets(self._db_conn)
        logger.info("Starting sweep over %d targets", len(targets))
        return run_sweep(
            self._db_conn,
            targets,
            timeout_ms=self._config.timeout_ms,
            max_workers=self._config.max_workers,
        )

    def run_single_probe(self, target_id: str) -> CheckResult:
        """Probe one target on demand, outside the sweep pool, and record it.

        Raises:
            TargetNotFoundError: If the target does not exist.
            DatabaseError: If the result cannot be recorded.
        """
        target = get_target(self._db_conn, target_id)
        result = _probe_and_record(self._db_conn, target, self._config.timeout_ms)
        logger.info(
            "Manual check for %s: status=%d success=%s (%dms)",
            target.url,
            result.status_code,
            result.success,
            result.response_time_ms,
        )
        return result

    def get_status(self, target_id: str, time_range: TimeRange | None = None) -> SiteStatus:
        """Aggregate status of a target (trailing 24 hours by default)."""
        return get_site_status(self._db_conn, target_id, time_range)

    def get_uptime(self, target_id: str, time_range: TimeRange) -> float | None:
        """Uptime percentage over a range, None when the range holds no checks."""
        return get_uptime_percentage(self._db_conn, target_id, time_range)

    def start(self) -> None:
        """Start the sweep scheduler in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Monitor already running")
            return

        self._stop_event.clear()
        self._thread = Thread(target=self._run_loop, daemon=True, name="sweep-loop")
        self._thread.start()
        logger.info("Monitor started, sweeping every %ds", self._config.interval)

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the scheduler, waiting up to ``timeout`` seconds for the current sweep."""
        if self._thread is None or not self._thread.is_alive():
            return

        logger.info("Stopping monitor...")
        self._stop_event.set()
        self._thread.join(timeout=timeout)

        if self._thread.is_alive():
            logger.warning("Monitor thread did not stop within timeout")
        else:
            logger.info("Monitor stopped")

    def is_running(self) -> bool:
        """Check if the scheduler loop is currently running."""
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        logger.debug("Sweep loop started")

        while not self._stop_event.is_set():
            try:
                self.run_sweep()
            except Exception as e:
                logger.error("Sweep failed: %s", e)

            # wait() so stop() interrupts the sleep
            self._stop_event.wait(timeout=self._config.interval)

        logger.debug("Sweep loop exited")
