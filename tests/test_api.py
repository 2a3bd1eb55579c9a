"""Tests for the API module."""

import http.client
import json
import socket
import sqlite3
import time
import urllib.error
import urllib.request
import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Optional
from unittest.mock import patch
from urllib.parse import quote

import pytest

from sitewatch.api import (
    ApiError,
    ApiServer,
    _check_to_dict,
    _site_status_to_dict,
)
from sitewatch.config import ApiConfig, MonitorConfig
from sitewatch.database import create_target, get_latest_checks, init_db, insert_check
from sitewatch.models import CheckResult, SiteStatus, Target, TimeRange
from sitewatch.monitor import Monitor

T0 = datetime(2026, 1, 17, 10, 0, 0, tzinfo=UTC)


@pytest.fixture
def db_conn(tmp_path: Path) -> sqlite3.Connection:
    """Create a database connection with initialized tables."""
    conn = init_db(str(tmp_path / "test.db"))
    yield conn
    conn.close()


@pytest.fixture
def monitor(db_conn: sqlite3.Connection) -> Monitor:
    return Monitor(MonitorConfig(timeout_ms=1000), db_conn)


@pytest.fixture
def sample_target() -> Target:
    return Target(
        id="abc",
        url="https://example.com",
        name="Example",
        active=True,
        created_at=T0,
        updated_at=T0,
    )


def get_free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        return s.getsockname()[1]


def make_check(target_id: str, checked_at: datetime, success: bool = True, response_time_ms: int = 100) -> CheckResult:
    return CheckResult(
        id=uuid.uuid4().hex,
        target_id=target_id,
        checked_at=checked_at,
        status_code=200 if success else 0,
        response_time_ms=response_time_ms,
        success=success,
        error_message=None if success else "Connection refused",
    )


def iso(moment: datetime) -> str:
    return quote(moment.isoformat())


class TestSerializers:
    """Tests for the JSON conversion helpers."""

    def test_check_to_dict(self) -> None:
        """Checks are rendered with a UTC Z timestamp."""
        check = make_check("abc", datetime(2026, 1, 17, 10, 30, 0, tzinfo=UTC), success=False)

        result = _check_to_dict(check)

        assert result["site_id"] == "abc"
        assert result["timestamp"] == "2026-01-17T10:30:00Z"
        assert result["status"] == 0
        assert result["success"] is False
        assert result["error"] == "Connection refused"

    def test_site_status_rounds_aggregates(self, sample_target: Target) -> None:
        """Uptime and latency are rounded to 2 decimal places."""
        status = SiteStatus(
            target=sample_target,
            time_range=TimeRange(T0, T0 + timedelta(hours=1)),
            uptime_percentage=66.66666666666667,
            average_response_time_ms=123.456,
        )

        result = _site_status_to_dict(status)

        assert result["uptime_percentage"] == 66.67
        assert result["average_response_time_ms"] == 123.46
        assert result["site"]["id"] == "abc"
        assert result["start_time"] == "2026-01-17T10:00:00Z"
        assert result["end_time"] == "2026-01-17T11:00:00Z"

    def test_site_status_keeps_absent_as_null(self, sample_target: Target) -> None:
        """No data stays null rather than becoming 0."""
        status = SiteStatus(target=sample_target, time_range=TimeRange(T0, T0))

        result = _site_status_to_dict(status)

        assert result["uptime_percentage"] is None
        assert result["average_response_time_ms"] is None
        assert result["last_check"] is None
        assert result["checks"] == []


class TestApiServer:
    """Tests for ApiServer class."""

    def test_starts_and_stops(self, db_conn: sqlite3.Connection, monitor: Monitor) -> None:
        """Server starts and stops without errors."""
        server = ApiServer(ApiConfig(enabled=True, port=get_free_port()), db_conn, monitor)

        assert not server.is_running
        server.start()
        assert server.is_running

        server.stop()
        assert not server.is_running

    def test_start_twice_is_safe(self, db_conn: sqlite3.Connection, monitor: Monitor) -> None:
        """Calling start() twice doesn't cause errors."""
        server = ApiServer(ApiConfig(enabled=True, port=get_free_port()), db_conn, monitor)

        try:
            server.start()
            server.start()
            assert server.is_running
        finally:
            server.stop()

    def test_stop_without_start_is_safe(self, db_conn: sqlite3.Connection, monitor: Monitor) -> None:
        ApiServer(ApiConfig(enabled=True, port=get_free_port()), db_conn, monitor).stop()

    def test_raises_on_port_conflict(self, db_conn: sqlite3.Connection, monitor: Monitor) -> None:
        """Raises ApiError when port is already in use."""
        config = ApiConfig(enabled=True, port=get_free_port())
        server1 = ApiServer(config, db_conn, monitor)
        server2 = ApiServer(config, db_conn, monitor)

        try:
            server1.start()
            with pytest.raises(ApiError):
                server2.start()
        finally:
            server1.stop()
            server2.stop()


class TestApiEndpoints:
    """Integration tests for API endpoints."""

    @pytest.fixture
    def running_server(self, db_conn: sqlite3.Connection, monitor: Monitor) -> ApiServer:
        """Start a server and yield it, stopping after test."""
        server = ApiServer(ApiConfig(enabled=True, port=get_free_port()), db_conn, monitor)
        server.start()
        # Give server time to start
        time.sleep(0.1)
        yield server
        server.stop()

    def _request(
        self,
        server: ApiServer,
        method: str,
        path: str,
        payload: Optional[Any] = None,
    ) -> tuple:
        """Make a request and return (status_code, json_body or None)."""
        url = f"http://127.0.0.1:{server.config.port}{path}"
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        request = urllib.request.Request(url, data=data, method=method)
        if data is not None:
            request.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(request, timeout=5) as response:
                raw = response.read()
                return response.status, json.loads(raw.decode("utf-8")) if raw else None
        except urllib.error.HTTPError as e:
            raw = e.read()
            return e.code, json.loads(raw.decode("utf-8")) if raw else None

    def test_health_endpoint(self, running_server: ApiServer) -> None:
        status, body = self._request(running_server, "GET", "/api/health")

        assert status == 200
        assert body["status"] == "ok"
        assert body["timestamp"].endswith("Z")

    def test_unknown_path_is_404(self, running_server: ApiServer) -> None:
        status, body = self._request(running_server, "GET", "/nope")

        assert status == 404
        assert body == {"error": "Not found"}

    def test_create_and_list_sites(self, running_server: ApiServer) -> None:
        """POST /api/sites registers a target that GET /api/sites lists."""
        status, created = self._request(
            running_server, "POST", "/api/sites", {"url": "https://example.com", "name": "Example"}
        )

        assert status == 201
        assert created["url"] == "https://example.com"
        assert created["active"] is True

        status, listed = self._request(running_server, "GET", "/api/sites")

        assert status == 200
        assert [s["id"] for s in listed] == [created["id"]]

    @pytest.mark.parametrize(
        "payload",
        [
            {"name": "No URL"},
            {"url": "https://example.com"},
            {"url": "ftp://example.com", "name": "FTP"},
            {"url": "https://example.com", "name": "X", "active": "yes"},
        ],
    )
    def test_create_rejects_invalid_payload(self, running_server: ApiServer, payload: dict) -> None:
        status, body = self._request(running_server, "POST", "/api/sites", payload)

        assert status == 400
        assert "error" in body

    def test_create_rejects_non_json_body(self, running_server: ApiServer) -> None:
        url = f"http://127.0.0.1:{running_server.config.port}/api/sites"
        request = urllib.request.Request(url, data=b"not json", method="POST")

        with pytest.raises(urllib.error.HTTPError) as exc_info:
            urllib.request.urlopen(request, timeout=5)

        assert exc_info.value.code == 400

    @pytest.mark.parametrize("length", ["abc", "-5"])
    def test_create_rejects_invalid_content_length(self, running_server: ApiServer, length: str) -> None:
        """A malformed Content-Length header is a client error, not a 500."""
        conn = http.client.HTTPConnection("127.0.0.1", running_server.config.port, timeout=5)
        try:
            conn.putrequest("POST", "/api/sites")
            conn.putheader("Content-Length", length)
            conn.endheaders()
            response = conn.getresponse()
            body = json.loads(response.read().decode("utf-8"))
        finally:
            conn.close()

        assert response.status == 400
        assert body == {"error": "Invalid Content-Length"}

    def test_get_update_delete_site(self, running_server: ApiServer, db_conn: sqlite3.Connection) -> None:
        """A site can be read, partially updated and deleted."""
        target = create_target(db_conn, url="https://example.com", name="Example")

        status, body = self._request(running_server, "GET", f"/api/sites/{target.id}")
        assert status == 200
        assert body["name"] == "Example"

        status, body = self._request(running_server, "PUT", f"/api/sites/{target.id}", {"active": False})
        assert status == 200
        assert body["active"] is False
        assert body["url"] == "https://example.com"

        status, body = self._request(running_server, "DELETE", f"/api/sites/{target.id}")
        assert status == 204
        assert body is None

        status, body = self._request(running_server, "GET", f"/api/sites/{target.id}")
        assert status == 404
        assert body == {"error": f"Target '{target.id}' not found"}

    @pytest.mark.parametrize(
        "method,path,payload",
        [
            ("GET", "/api/sites/missing", None),
            ("PUT", "/api/sites/missing", {"name": "X"}),
            ("DELETE", "/api/sites/missing", None),
            ("GET", "/api/sites/missing/status", None),
            ("GET", "/api/sites/missing/checks", None),
            ("POST", "/api/sites/missing/check", None),
        ],
    )
    def test_unknown_site_is_404(self, running_server: ApiServer, method: str, path: str, payload: Any) -> None:
        status, body = self._request(running_server, method, path, payload)

        assert status == 404
        assert "not found" in body["error"]

    def test_unknown_site_uptime_is_404(self, running_server: ApiServer) -> None:
        """A missing target is 404, distinct from a target with no data."""
        path = f"/api/sites/missing/uptime?startTime={iso(T0)}&endTime={iso(T0 + timedelta(hours=1))}"

        status, _ = self._request(running_server, "GET", path)

        assert status == 404

    def test_wrong_method_is_405(self, running_server: ApiServer, db_conn: sqlite3.Connection) -> None:
        target = create_target(db_conn, url="https://example.com", name="Example")

        status, body = self._request(running_server, "DELETE", f"/api/sites/{target.id}/status")

        assert status == 405
        assert body == {"error": "Method not allowed"}

    def test_status_endpoint(self, running_server: ApiServer, db_conn: sqlite3.Connection) -> None:
        """GET /status reports uptime, latency and checks over the given range."""
        target = create_target(db_conn, url="https://example.com", name="Example")
        for minutes, ok, latency in ((0, True, 100), (10, True, 200), (20, False, 300), (30, True, 400)):
            insert_check(db_conn, make_check(target.id, T0 + timedelta(minutes=minutes), ok, latency))

        path = f"/api/sites/{target.id}/status?startTime={iso(T0)}&endTime={iso(T0 + timedelta(minutes=30))}"
        status, body = self._request(running_server, "GET", path)

        assert status == 200
        assert body["uptime_percentage"] == 75.0
        assert body["average_response_time_ms"] == 250.0
        assert len(body["checks"]) == 4
        assert body["last_check"]["timestamp"] == "2026-01-17T10:30:00Z"

    def test_status_endpoint_defaults_to_last_24h(self, running_server: ApiServer, db_conn: sqlite3.Connection) -> None:
        """Without a range, only checks from the trailing 24 hours count."""
        target = create_target(db_conn, url="https://example.com", name="Example")
        now = datetime.now(UTC)
        insert_check(db_conn, make_check(target.id, now - timedelta(hours=1), success=False))
        insert_check(db_conn, make_check(target.id, now - timedelta(hours=30), success=True))

        status, body = self._request(running_server, "GET", f"/api/sites/{target.id}/status")

        assert status == 200
        assert body["uptime_percentage"] == 0.0
        assert len(body["checks"]) == 1

    def test_status_endpoint_no_data(self, running_server: ApiServer, db_conn: sqlite3.Connection) -> None:
        target = create_target(db_conn, url="https://example.com", name="Example")

        status, body = self._request(running_server, "GET", f"/api/sites/{target.id}/status")

        assert status == 200
        assert body["uptime_percentage"] is None
        assert body["last_check"] is None

    @pytest.mark.parametrize(
        "query",
        [
            "startTime=yesterday&endTime=today",
            f"startTime={iso(T0)}",
            f"startTime={iso(T0 + timedelta(hours=1))}&endTime={iso(T0)}",
        ],
    )
    def test_status_endpoint_rejects_bad_range(
        self, running_server: ApiServer, db_conn: sqlite3.Connection, query: str
    ) -> None:
        target = create_target(db_conn, url="https://example.com", name="Example")

        status, _ = self._request(running_server, "GET", f"/api/sites/{target.id}/status?{query}")

        assert status == 400

    def test_checks_endpoint(self, running_server: ApiServer, db_conn: sqlite3.Connection) -> None:
        """GET /checks returns the newest checks first, up to limit."""
        target = create_target(db_conn, url="https://example.com", name="Example")
        for minutes in range(5):
            insert_check(db_conn, make_check(target.id, T0 + timedelta(minutes=minutes)))

        status, body = self._request(running_server, "GET", f"/api/sites/{target.id}/checks?limit=2")

        assert status == 200
        assert [c["timestamp"] for c in body] == ["2026-01-17T10:04:00Z", "2026-01-17T10:03:00Z"]

    @pytest.mark.parametrize("limit", ["0", "1001", "abc"])
    def test_checks_endpoint_rejects_bad_limit(
        self, running_server: ApiServer, db_conn: sqlite3.Connection, limit: str
    ) -> None:
        target = create_target(db_conn, url="https://example.com", name="Example")

        status, _ = self._request(running_server, "GET", f"/api/sites/{target.id}/checks?limit={limit}")

        assert status == 400

    def test_uptime_endpoint(self, running_server: ApiServer, db_conn: sqlite3.Connection) -> None:
        target = create_target(db_conn, url="https://example.com", name="Example")
        insert_check(db_conn, make_check(target.id, T0, success=True))
        insert_check(db_conn, make_check(target.id, T0 + timedelta(minutes=5), success=False))

        path = f"/api/sites/{target.id}/uptime?startTime={iso(T0)}&endTime={iso(T0 + timedelta(hours=1))}"
        status, body = self._request(running_server, "GET", path)

        assert status == 200
        assert body["uptime_percentage"] == 50.0
        assert body["has_data"] is True

    def test_uptime_endpoint_no_data_is_null(self, running_server: ApiServer, db_conn: sqlite3.Connection) -> None:
        """A known target with an empty window reports null, not 0."""
        target = create_target(db_conn, url="https://example.com", name="Example")

        path = f"/api/sites/{target.id}/uptime?startTime={iso(T0)}&endTime={iso(T0 + timedelta(hours=1))}"
        status, body = self._request(running_server, "GET", path)

        assert status == 200
        assert body["uptime_percentage"] is None
        assert body["has_data"] is False

    def test_uptime_endpoint_requires_range(self, running_server: ApiServer, db_conn: sqlite3.Connection) -> None:
        target = create_target(db_conn, url="https://example.com", name="Example")

        status, body = self._request(running_server, "GET", f"/api/sites/{target.id}/uptime")

        assert status == 400
        assert "startTime" in body["error"]

    def test_manual_check_endpoint(self, running_server: ApiServer, db_conn: sqlite3.Connection) -> None:
        """POST /check probes the target now and records the result."""
        target = create_target(db_conn, url="https://example.com", name="Example")
        result = make_check(target.id, datetime.now(UTC), success=False)

        with patch("sitewatch.monitor.check_target", return_value=result) as mock_check:
            status, body = self._request(running_server, "POST", f"/api/sites/{target.id}/check")

        assert status == 200
        assert body["id"] == result.id
        assert body["success"] is False
        mock_check.assert_called_once()
        assert get_latest_checks(db_conn, target.id) == [result]

    def test_sweep_endpoint(self, running_server: ApiServer, db_conn: sqlite3.Connection) -> None:
        """POST /api/sweep probes active targets and skips inactive ones."""
        active = create_target(db_conn, url="https://a.example.com", name="A")
        inactive = create_target(db_conn, url="https://b.example.com", name="B", active=False)

        def fake_check(target: Target, timeout_ms: int) -> CheckResult:
            return make_check(target.id, datetime.now(UTC))

        with patch("sitewatch.monitor.check_target", side_effect=fake_check):
            status, body = self._request(running_server, "POST", "/api/sweep")

        assert status == 200
        assert body["recorded"] == 1
        assert body["up"] == 1
        assert body["skipped"] == [inactive.id]
        assert body["partial"] is False
        assert [c["site_id"] for c in body["checks"]] == [active.id]
