"""HTTP JSON API over the target registry and the monitoring engine."""

import json
import logging
import re
import sqlite3
import threading
from datetime import UTC, datetime
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlsplit

from .config import ApiConfig
from .database import (
    DatabaseError,
    DEFAULT_CHECKS_LIMIT,
    create_target,
    delete_target,
    find_target,
    get_latest_checks,
    get_target,
    list_targets,
    update_target,
)
from .models import CheckResult, SiteStatus, SweepReport, Target, TargetNotFoundError, TimeRange
from .monitor import Monitor

logger = logging.getLogger(__name__)

# Largest page of checks a single request may ask for.
MAX_CHECKS_LIMIT = 1000

# Request bodies are tiny JSON objects; anything larger is rejected.
MAX_BODY_BYTES = 64 * 1024

_SITE_PATH = re.compile(r"^/api/sites/(?P<id>[^/]+)(?:/(?P<action>status|checks|uptime|check))?/?$")


class ApiError(Exception):
    """Raised when an API operation fails."""
    pass


class _BadRequest(Exception):
    """Client input error, answered with 400."""
    pass


def _iso(moment: datetime) -> str:
    return moment.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _target_to_dict(target: Target) -> Dict[str, Any]:
    return {
        "id": target.id,
        "url": target.url,
        "name": target.name,
        "active": target.active,
        "created_at": _iso(target.created_at),
        "updated_at": _iso(target.updated_at),
    }


def _check_to_dict(check: CheckResult) -> Dict[str, Any]:
    return {
        "id": check.id,
        "site_id": check.target_id,
        "timestamp": _iso(check.checked_at),
        "status": check.status_code,
        "response_time_ms": check.response_time_ms,
        "success": check.success,
        "error": check.error_message,
    }


def _site_status_to_dict(status: SiteStatus) -> Dict[str, Any]:
    """Convert a SiteStatus to a JSON-serializable dictionary.

    Absent aggregates stay null so "no data" is never reported as 0%.
    """
    uptime = status.uptime_percentage
    average = status.average_response_time_ms
    return {
        "site": _target_to_dict(status.target),
        "start_time": _iso(status.time_range.start),
        "end_time": _iso(status.time_range.end),
        "last_check": _check_to_dict(status.last_check) if status.last_check else None,
        "uptime_percentage": round(uptime, 2) if uptime is not None else None,
        "average_response_time_ms": round(average, 2) if average is not None else None,
        "checks": [_check_to_dict(c) for c in status.checks],
    }


def _sweep_report_to_dict(report: SweepReport) -> Dict[str, Any]:
    return {
        "started_at": _iso(report.started_at),
        "finished_at": _iso(report.finished_at),
        "recorded": len(report.results),
        "up": sum(1 for r in report.results if r.success),
        "skipped": report.skipped,
        "failures": report.failures,
        "partial": report.partial,
        "checks": [_check_to_dict(r) for r in report.results],
    }


def _parse_time(name: str, value: str) -> datetime:
    """Parse an ISO-8601 query value; naive values are taken as UTC."""
    try:
        moment = datetime.fromisoformat(value)
    except ValueError:
        raise _BadRequest(f"{name} must be an ISO-8601 timestamp")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment


def _parse_range(query: Dict[str, list], required: bool) -> Optional[TimeRange]:
    """Read startTime/endTime from the query string."""
    start_raw = query.get("startTime", [None])[0]
    end_raw = query.get("endTime", [None])[0]

    if start_raw is None and end_raw is None and not required:
        return None
    if not start_raw or not end_raw:
        raise _BadRequest("startTime and endTime query parameters are required")

    start = _parse_time("startTime", start_raw)
    end = _parse_time("endTime", end_raw)
    if start > end:
        raise _BadRequest("startTime must not be after endTime")
    return TimeRange(start=start, end=end)


class SiteHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the /api endpoints."""

    # Class-level references set by factory
    db_conn: Optional[sqlite3.Connection] = None
    monitor: Optional[Monitor] = None

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("API %s - %s", self.address_string(), format % args)

    def _send_json(self, code: int, data: Any) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def _send_no_content(self) -> None:
        self.send_response(204)
        self.send_header("Connection", "close")
        self.end_headers()

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"error": message})

    def _read_json_body(self) -> Dict[str, Any]:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            raise _BadRequest("Invalid Content-Length")
        if length < 0:
            raise _BadRequest("Invalid Content-Length")
        if length > MAX_BODY_BYTES:
            raise _BadRequest("Request body too large")
        raw = self.rfile.read(length) if length > 0 else b""
        if not raw:
            return {}
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise _BadRequest("Request body must be valid JSON")
        if not isinstance(data, dict):
            raise _BadRequest("Request body must be a JSON object")
        return data

    def _dispatch(self, method: str) -> None:
        """Route a request and map engine errors to status codes."""
        if self.db_conn is None or self.monitor is None:
            self._send_error_json(503, "Database not available")
            return

        parts = urlsplit(self.path)
        path = parts.path
        query = parse_qs(parts.query)

        try:
            if path == "/api/health" and method == "GET":
                self._send_json(200, {"status": "ok", "timestamp": _iso(datetime.now(UTC))})
            elif path in ("/api/sites", "/api/sites/"):
                if method == "GET":
                    self._handle_list_sites()
                elif method == "POST":
                    self._handle_create_site()
                else:
                    self._send_error_json(405, "Method not allowed")
            elif path == "/api/sweep" and method == "POST":
                self._handle_sweep()
            else:
                match = _SITE_PATH.match(path)
                if match is None:
                    self._send_error_json(404, "Not found")
                    return
                self._dispatch_site(method, match.group("id"), match.group("action"), query)
        except _BadRequest as e:
            self._send_error_json(400, str(e))
        except TargetNotFoundError as e:
            self._send_error_json(404, str(e))
        except DatabaseError as e:
            logger.error("Database error in %s %s: %s", method, path, e)
            self._send_error_json(500, "Database error")
        except Exception as e:
            logger.exception("Error handling %s request: %s", method, e)
            self._send_error_json(500, "Internal server error")

    def _dispatch_site(self, method: str, target_id: str, action: Optional[str], query: Dict[str, list]) -> None:
        routes = {
            ("GET", None): lambda: self._handle_get_site(target_id),
            ("PUT", None): lambda: self._handle_update_site(target_id),
            ("DELETE", None): lambda: self._handle_delete_site(target_id),
            ("GET", "status"): lambda: self._handle_status(target_id, query),
            ("GET", "checks"): lambda: self._handle_checks(target_id, query),
            ("GET", "uptime"): lambda: self._handle_uptime(target_id, query),
            ("POST", "check"): lambda: self._handle_manual_check(target_id),
        }
        handler = routes.get((method, action))
        if handler is None:
            self._send_error_json(405, "Method not allowed")
            return
        handler()

    def do_GET(self) -> None:
        """Handle GET requests."""
        self._dispatch("GET")

    def do_POST(self) -> None:
        """Handle POST requests."""
        self._dispatch("POST")

    def do_PUT(self) -> None:
        """Handle PUT requests."""
        self._dispatch("PUT")

    def do_DELETE(self) -> None:
        """Handle DELETE requests."""
        self._dispatch("DELETE")

    def _handle_list_sites(self) -> None:
        targets = list_targets(self.db_conn)
        self._send_json(200, [_target_to_dict(t) for t in targets])

    def _handle_create_site(self) -> None:
        """Handle POST /api/sites."""
        data = self._read_json_body()
        url = data.get("url")
        name = data.get("name")
        active = data.get("active", True)

        if not url or not name:
            raise _BadRequest("URL and name are required")
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise _BadRequest("URL must start with http:// or https://")
        if not isinstance(name, str):
            raise _BadRequest("name must be a string")
        if not isinstance(active, bool):
            raise _BadRequest("active must be a boolean")

        target = create_target(self.db_conn, url=url, name=name, active=active)
        logger.info("Created site: %s (%s)", target.name, target.url)
        self._send_json(201, _target_to_dict(target))

    def _handle_get_site(self, target_id: str) -> None:
        target = get_target(self.db_conn, target_id)
        self._send_json(200, _target_to_dict(target))

    def _handle_update_site(self, target_id: str) -> None:
        """Handle PUT /api/sites/<id> - partial update of url, name, active."""
        data = self._read_json_body()
        url = data.get("url")
        name = data.get("name")
        active = data.get("active")

        if url is not None and (not isinstance(url, str) or not url.startswith(("http://", "https://"))):
            raise _BadRequest("URL must start with http:// or https://")
        if name is not None and (not isinstance(name, str) or not name):
            raise _BadRequest("name must be a non-empty string")
        if active is not None and not isinstance(active, bool):
            raise _BadRequest("active must be a boolean")

        target = update_target(self.db_conn, target_id, url=url, name=name, active=active)
        if target is None:
            raise TargetNotFoundError(target_id)
        logger.info("Updated site %s", target_id)
        self._send_json(200, _target_to_dict(target))

    def _handle_delete_site(self, target_id: str) -> None:
        if not delete_target(self.db_conn, target_id):
            raise TargetNotFoundError(target_id)
        logger.info("Deleted site %s", target_id)
        self._send_no_content()

    def _handle_status(self, target_id: str, query: Dict[str, list]) -> None:
        """Handle GET /api/sites/<id>/status, trailing 24h unless a range is given."""
        time_range = _parse_range(query, required=False)
        status = self.monitor.get_status(target_id, time_range)
        self._send_json(200, _site_status_to_dict(status))

    def _handle_checks(self, target_id: str, query: Dict[str, list]) -> None:
        """Handle GET /api/sites/<id>/checks?limit=N."""
        raw_limit = query.get("limit", [str(DEFAULT_CHECKS_LIMIT)])[0]
        try:
            limit = int(raw_limit)
        except ValueError:
            raise _BadRequest("limit must be an integer")
        if not (1 <= limit <= MAX_CHECKS_LIMIT):
            raise _BadRequest(f"limit must be between 1 and {MAX_CHECKS_LIMIT}")

        if find_target(self.db_conn, target_id) is None:
            raise TargetNotFoundError(target_id)
        checks = get_latest_checks(self.db_conn, target_id, limit=limit)
        self._send_json(200, [_check_to_dict(c) for c in checks])

    def _handle_uptime(self, target_id: str, query: Dict[str, list]) -> None:
        """Handle GET /api/sites/<id>/uptime?startTime=...&endTime=...

        An empty window is a valid answer: uptime_percentage is null.
        """
        time_range = _parse_range(query, required=True)
        percentage = self.monitor.get_uptime(target_id, time_range)
        self._send_json(
            200,
            {
                "site_id": target_id,
                "start_time": _iso(time_range.start),
                "end_time": _iso(time_range.end),
                "uptime_percentage": percentage,
                "has_data": percentage is not None,
            },
        )

    def _handle_manual_check(self, target_id: str) -> None:
        result = self.monitor.run_single_probe(target_id)
        self._send_json(200, _check_to_dict(result))

    def _handle_sweep(self) -> None:
        report = self.monitor.run_sweep()
        self._send_json(200, _sweep_report_to_dict(report))


def _create_handler_class(db_conn: sqlite3.Connection, monitor: Monitor) -> type:
    """Create a handler class with the database connection and monitor bound."""

    class BoundSiteHandler(SiteHandler):
        pass

    BoundSiteHandler.db_conn = db_conn
    BoundSiteHandler.monitor = monitor
    return BoundSiteHandler


class ApiServer:
    """HTTP API server running in a background thread."""

    def __init__(
        self,
        config: ApiConfig,
        db_conn: sqlite3.Connection,
        monitor: Monitor,
    ) -> None:
        """Initialize the API server.

        Args:
            config: API configuration.
            db_conn: Database connection for the target registry.
            monitor: Engine used for probes, sweeps and status queries.
        """
        self.config = config
        self.db_conn = db_conn
        self.monitor = monitor
        self._server: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._shutdown_event = threading.Event()

    def start(self) -> None:
        """Start the API server in a background thread.

        Raises:
            ApiError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("API server is already running")
            return

        try:
            handler_class = _create_handler_class(self.db_conn, self.monitor)
            self._server = HTTPServer(("", self.config.port), handler_class)
            self._server.timeout = 1.0  # Allow periodic shutdown checks
        except OSError as e:
            if e.errno in (98, 48):  # EADDRINUSE (Linux=98, macOS=48)
                raise ApiError(f"Port {self.config.port} is already in use")
            elif e.errno == 13:  # EACCES
                raise ApiError(
                    f"Permission denied for port {self.config.port}. "
                    f"Ports below 1024 require root privileges."
                )
            raise ApiError(f"Failed to start API server on port {self.config.port}: {e}")

        self._shutdown_event.clear()
        self._thread = threading.Thread(
            target=self._serve_forever,
            name="api-server",
            daemon=True,
        )
        self._thread.start()

        logger.info("API server started on port %d", self.config.port)

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()

    def stop(self) -> None:
        """Stop the API server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping API server...")
        self._shutdown_event.set()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        if self._server:
            self._server.server_close()

        self._server = None
        self._thread = None
        logger.info("API server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
