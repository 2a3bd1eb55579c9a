"""Data models for monitored targets, checks and derived status views."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta


class TargetNotFoundError(LookupError):
    """Raised when a target identifier does not resolve to a known target."""

    def __init__(self, target_id: str) -> None:
        super().__init__(f"Target '{target_id}' not found")
        self.target_id = target_id


@dataclass(frozen=True)
class Target:
    """A monitored HTTP(S) endpoint.

    Attributes:
        id: Unique identifier, immutable once assigned.
        url: Full URL to probe.
        name: Human-readable display name.
        active: Whether sweeps should probe this target.
        created_at: Registration timestamp (UTC).
        updated_at: Timestamp of the last registry update (UTC).
    """

    id: str
    url: str
    name: str
    active: bool
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class CheckResult:
    """Immutable outcome of a single probe.

    Attributes:
        id: Unique identifier of this check.
        target_id: Identifier of the probed target.
        checked_at: Instant the probe started (UTC).
        status_code: HTTP status code, or 0 if no response was obtained.
        response_time_ms: Wall-clock latency until the terminal outcome.
        success: True iff a response was received with a 2xx status code.
        error_message: Failure description, None on success.
    """

    id: str
    target_id: str
    checked_at: datetime
    status_code: int
    response_time_ms: int
    success: bool
    error_message: str | None = None


@dataclass(frozen=True)
class TimeRange:
    """Closed time interval [start, end], inclusive on both ends."""

    start: datetime
    end: datetime

    @classmethod
    def last_hours(cls, hours: float, now: datetime) -> "TimeRange":
        """Build the trailing window of ``hours`` ending at ``now``."""
        return cls(start=now - timedelta(hours=hours), end=now)


@dataclass(frozen=True)
class SiteStatus:
    """Aggregate view of a target, recomputed on every query.

    ``uptime_percentage`` and ``average_response_time_ms`` are None when the
    window holds no checks: an unmonitored window is unknown, not down.
    """

    target: Target
    time_range: TimeRange
    last_check: CheckResult | None = None
    uptime_percentage: float | None = None
    average_response_time_ms: float | None = None
    checks: list[CheckResult] = field(default_factory=list)


@dataclass(frozen=True)
class SweepReport:
    """Outcome of one sweep over the registered targets.

    Attributes:
        started_at: When the sweep began (UTC).
        finished_at: When the last task completed (UTC).
        results: Check results that were probed and recorded.
        skipped: Identifiers of inactive targets that were not probed.
        failures: Target id -> error for targets whose check was not recorded.
    """

    started_at: datetime
    finished_at: datetime
    results: list[CheckResult] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        """True when at least one active target could not be recorded."""
        return bool(self.failures)
