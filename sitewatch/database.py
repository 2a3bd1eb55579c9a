"""SQLite persistence for the target registry and the append-only check log."""

import sqlite3
import threading
import uuid
from datetime import UTC, datetime
from pathlib import Path

from .models import CheckResult, Target, TargetNotFoundError


class DatabaseError(Exception):
    """Raised when a database operation fails."""

    pass


# SQLite allows concurrent reads but only one writer at a time.
# Held for the duration of a single statement, never across a network call.
_db_lock = threading.Lock()

# Number of checks returned by get_latest_checks() when no limit is given.
DEFAULT_CHECKS_LIMIT = 100


def _to_db_time(moment: datetime) -> str:
    """Serialize a timestamp as fixed-width UTC ISO-8601.

    Fixed width (always microseconds, always +00:00) keeps lexical order equal
    to time order, which the range queries rely on. Naive values are taken as UTC.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="microseconds")


def _from_db_time(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _row_to_target(row: sqlite3.Row) -> Target:
    return Target(
        id=row["id"],
        url=row["url"],
        name=row["name"],
        active=bool(row["active"]),
        created_at=_from_db_time(row["created_at"]),
        updated_at=_from_db_time(row["updated_at"]),
    )


def _row_to_check(row: sqlite3.Row) -> CheckResult:
    return CheckResult(
        id=row["id"],
        target_id=row["target_id"],
        checked_at=_from_db_time(row["checked_at"]),
        status_code=row["status_code"],
        response_time_ms=row["response_time_ms"],
        success=bool(row["success"]),
        error_message=row["error_message"],
    )


def init_db(db_path: str) -> sqlite3.Connection:
    """Initialize the database and create tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file.

    Returns:
        Database connection with WAL mode enabled, shareable across threads.

    Raises:
        DatabaseError: If database initialization fails.
    """
    try:
        parent_dir = Path(db_path).parent
        if not parent_dir.exists():
            parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS targets (
                id TEXT PRIMARY KEY,
                url TEXT NOT NULL,
                name TEXT NOT NULL,
                active INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS checks (
                id TEXT PRIMARY KEY,
                target_id TEXT NOT NULL,
                checked_at TEXT NOT NULL,
                status_code INTEGER NOT NULL,
                response_time_ms INTEGER NOT NULL,
                success INTEGER NOT NULL,
                error_message TEXT
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_checks_target_id_checked_at
            ON checks(target_id, checked_at)
        """)

        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to initialize database: {e}")
    except OSError as e:
        raise DatabaseError(f"Failed to create database directory: {e}")


# =============================================================================
# TARGET REGISTRY
# =============================================================================


def create_target(conn: sqlite3.Connection, url: str, name: str, active: bool = True) -> Target:
    """Register a new target and return it with its assigned identifier.

    Raises:
        DatabaseError: If the insert fails.
    """
    now = datetime.now(UTC)
    target = Target(
        id=str(uuid.uuid4()),
        url=url,
        name=name,
        active=active,
        created_at=now,
        updated_at=now,
    )
    try:
        with _db_lock:
            conn.execute(
                """
                INSERT INTO targets (id, url, name, active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    target.id,
                    target.url,
                    target.name,
                    1 if target.active else 0,
                    _to_db_time(target.created_at),
                    _to_db_time(target.updated_at),
                ),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to create target: {e}")
    return target


def find_target(conn: sqlite3.Connection, target_id: str) -> Target | None:
    """Return the target with the given identifier, or None if unknown.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        row = conn.execute(
            "SELECT id, url, name, active, created_at, updated_at FROM targets WHERE id = ?",
            (target_id,),
        ).fetchone()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get target {target_id}: {e}")
    return _row_to_target(row) if row is not None else None


def get_target(conn: sqlite3.Connection, target_id: str) -> Target:
    """Return the target with the given identifier.

    Raises:
        TargetNotFoundError: If no such target is registered.
        DatabaseError: If the query fails.
    """
    target = find_target(conn, target_id)
    if target is None:
        raise TargetNotFoundError(target_id)
    return target


def list_targets(conn: sqlite3.Connection) -> list[Target]:
    """Return every registered target, oldest first.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        rows = conn.execute(
            "SELECT id, url, name, active, created_at, updated_at FROM targets ORDER BY created_at, id"
        ).fetchall()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to list targets: {e}")
    return [_row_to_target(row) for row in rows]


def update_target(
    conn: sqlite3.Connection,
    target_id: str,
    url: str | None = None,
    name: str | None = None,
    active: bool | None = None,
) -> Target | None:
    """Apply a partial update to a target.

    Only the given fields change; ``updated_at`` is always bumped.

    Returns:
        The updated target, or None if it does not exist.

    Raises:
        DatabaseError: If the update fails.
    """
    assignments = ["updated_at = ?"]
    params: list = [_to_db_time(datetime.now(UTC))]
    if url is not None:
        assignments.append("url = ?")
        params.append(url)
    if name is not None:
        assignments.append("name = ?")
        params.append(name)
    if active is not None:
        assignments.append("active = ?")
        params.append(1 if active else 0)
    params.append(target_id)

    try:
        with _db_lock:
            cursor = conn.execute(
                f"UPDATE targets SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to update target {target_id}: {e}")

    if cursor.rowcount == 0:
        return None
    return find_target(conn, target_id)


def delete_target(conn: sqlite3.Connection, target_id: str) -> bool:
    """Remove a target from the registry.

    Its recorded checks are kept; the check log is append-only.

    Returns:
        True if a target was deleted, False if it did not exist.

    Raises:
        DatabaseError: If the delete fails.
    """
    try:
        with _db_lock:
            cursor = conn.execute("DELETE FROM targets WHERE id = ?", (target_id,))
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to delete target {target_id}: {e}")
    return cursor.rowcount > 0


# =============================================================================
# CHECK LOG (append-only)
# =============================================================================


def insert_check(conn: sqlite3.Connection, result: CheckResult) -> None:
    """Append a check result to the log.

    Thread-safe: acquires global lock before database access.

    Raises:
        DatabaseError: If the insert fails.
    """
    try:
        with _db_lock:
            conn.execute(
                """
                INSERT INTO checks
                (id, target_id, checked_at, status_code, response_time_ms, success, error_message)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.id,
                    result.target_id,
                    _to_db_time(result.checked_at),
                    result.status_code,
                    result.response_time_ms,
                    1 if result.success else 0,
                    result.error_message,
                ),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to insert check result: {e}")


def get_checks_between(
    conn: sqlite3.Connection,
    target_id: str,
    start: datetime,
    end: datetime,
) -> list[CheckResult]:
    """Get every check of a target with ``start <= checked_at <= end``.

    Returns:
        List of CheckResult objects, ordered by checked_at descending.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        rows = conn.execute(
            """
            SELECT id, target_id, checked_at, status_code, response_time_ms, success, error_message
            FROM checks
            WHERE target_id = ? AND checked_at BETWEEN ? AND ?
            ORDER BY checked_at DESC
            """,
            (target_id, _to_db_time(start), _to_db_time(end)),
        ).fetchall()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get checks for {target_id}: {e}")
    return [_row_to_check(row) for row in rows]


def get_latest_checks(
    conn: sqlite3.Connection,
    target_id: str,
    limit: int = DEFAULT_CHECKS_LIMIT,
) -> list[CheckResult]:
    """Get the most recent checks of a target, newest first.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        rows = conn.execute(
            """
            SELECT id, target_id, checked_at, status_code, response_time_ms, success, error_message
            FROM checks
            WHERE target_id = ?
            ORDER BY checked_at DESC
            LIMIT ?
            """,
            (target_id, limit),
        ).fetchall()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get latest checks for {target_id}: {e}")
    return [_row_to_check(row) for row in rows]
