"""Uptime and latency aggregation over windows of the check log."""

import sqlite3
from datetime import UTC, datetime

from .database import get_checks_between, get_latest_checks, get_target
from .models import CheckResult, SiteStatus, TimeRange

# Window used by get_site_status() when the caller gives no range.
DEFAULT_WINDOW_HOURS = 24


def summarize_checks(checks: list[CheckResult]) -> tuple[float | None, float | None]:
    """Compute (uptime percentage, average response time) over checks.

    Both values are None for an empty list.
    """
    if not checks:
        return None, None

    total = len(checks)
    successes = sum(1 for check in checks if check.success)
    uptime = successes / total * 100.0
    average = sum(check.response_time_ms for check in checks) / total
    return uptime, average


def get_site_status(
    conn: sqlite3.Connection,
    target_id: str,
    time_range: TimeRange | None = None,
    now: datetime | None = None,
) -> SiteStatus:
    """Build the aggregate status view of a target.

    ``last_check`` is the latest check overall, independent of the window.
    When ``time_range`` is omitted the window is the trailing 24 hours ending
    at ``now``, which is sampled once so every part of the view agrees.

    Raises:
        TargetNotFoundError: If the target does not exist.
        DatabaseError: If the check log cannot be read.
    """
    target = get_target(conn, target_id)

    if time_range is None:
        if now is None:
            now = datetime.now(UTC)
        time_range = TimeRange.last_hours(DEFAULT_WINDOW_HOURS, now)

    latest = get_latest_checks(conn, target_id, limit=1)
    checks = get_checks_between(conn, target_id, time_range.start, time_range.end)
    uptime, average = summarize_checks(checks)

    return SiteStatus(
        target=target,
        time_range=time_range,
        last_check=latest[0] if latest else None,
        uptime_percentage=uptime,
        average_response_time_ms=average,
        checks=checks,
    )


def get_uptime_percentage(conn: sqlite3.Connection, target_id: str, time_range: TimeRange) -> float | None:
    """Uptime percentage of a target over a closed range.

    Returns:
        Percentage in 0-100, or None if the range holds no checks.

    Raises:
        TargetNotFoundError: If the target does not exist.
        DatabaseError: If the check log cannot be read.
    """
    get_target(conn, target_id)
    checks = get_checks_between(conn, target_id, time_range.start, time_range.end)
    uptime, _ = summarize_checks(checks)
    return uptime
