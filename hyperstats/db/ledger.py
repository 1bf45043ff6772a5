from __future__ import annotations

import logging
import sqlite3
from typing import Any

from hyperstats.utils.time import to_iso, utc_now

logger = logging.getLogger(__name__)

PENDING = "PENDING"
RUNNING = "RUNNING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"
CANCELLED = "CANCELLED"
TIMEOUT = "TIMEOUT"

TERMINAL_STATUSES = frozenset({COMPLETED, FAILED, CANCELLED, TIMEOUT})
# Terminal states the poller never revisits. COMPLETED stays pollable until processed.
UNPOLLABLE_STATUSES = (FAILED, CANCELLED, TIMEOUT)


def _now(now: str | None) -> str:
    return now or to_iso(utc_now())


def insert_execution(
    conn: sqlite3.Connection,
    execution_id: str,
    query_id: int,
    status: str = PENDING,
    trigger_run_id: str | None = None,
    now: str | None = None,
    commit: bool = True,
) -> None:
    """Record a freshly triggered execution. Raises sqlite3.IntegrityError on a duplicate id."""
    timestamp = _now(now)
    conn.execute(
        """
        INSERT INTO executions (
            execution_id, query_id, status, processed, created_at, updated_at, trigger_run_id
        )
        VALUES (?, ?, ?, 0, ?, ?, ?)
        """,
        (execution_id, query_id, status, timestamp, timestamp, trigger_run_id),
    )
    if commit:
        conn.commit()


def ensure_execution(
    conn: sqlite3.Connection,
    execution_id: str,
    query_id: int,
    status: str = PENDING,
    now: str | None = None,
    commit: bool = True,
) -> bool:
    """Insert the ledger row if it is unseen. Returns True when a row was created."""
    timestamp = _now(now)
    cursor = conn.execute(
        """
        INSERT INTO executions (execution_id, query_id, status, processed, created_at, updated_at)
        VALUES (?, ?, ?, 0, ?, ?)
        ON CONFLICT (execution_id) DO NOTHING
        """,
        (execution_id, query_id, status, timestamp, timestamp),
    )
    if commit:
        conn.commit()
    return cursor.rowcount > 0


def fetch_execution(conn: sqlite3.Connection, execution_id: str) -> dict[str, Any] | None:
    row = conn.execute(
        "SELECT * FROM executions WHERE execution_id = ?",
        (execution_id,),
    ).fetchone()
    return dict(row) if row else None


def fetch_pollable_executions(
    conn: sqlite3.Connection,
    created_since: str,
    limit: int,
) -> list[dict[str, Any]]:
    placeholders = ", ".join("?" for _ in UNPOLLABLE_STATUSES)
    rows = conn.execute(
        f"""
        SELECT * FROM executions
        WHERE processed = 0
          AND status NOT IN ({placeholders})
          AND created_at >= ?
        ORDER BY created_at ASC, execution_id ASC
        LIMIT ?
        """,
        (*UNPOLLABLE_STATUSES, created_since, limit),
    ).fetchall()
    return [dict(row) for row in rows]


def fetch_recent_executions(conn: sqlite3.Connection, limit: int = 50) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM executions ORDER BY created_at DESC LIMIT ?",
        (limit,),
    ).fetchall()
    return [dict(row) for row in rows]


def _transition_allowed(current: str, new: str) -> bool:
    return current not in TERMINAL_STATUSES or current == new


def update_status(
    conn: sqlite3.Connection,
    execution_id: str,
    status: str,
    error_message: str | None = None,
    now: str | None = None,
    commit: bool = True,
) -> bool:
    """Move an execution to `status`.

    Terminal states are final: a transition out of one is refused and
    logged, and False is returned. Terminal transitions stamp `completed_at`.
    """
    current = fetch_execution(conn, execution_id)
    if current is None:
        logger.warning("Status update for unknown execution %s", execution_id)
        return False
    if not _transition_allowed(current["status"], status):
        logger.warning(
            "Refusing status change %s -> %s for execution %s",
            current["status"],
            status,
            execution_id,
        )
        return False
    timestamp = _now(now)
    completed_at = current["completed_at"]
    if status in TERMINAL_STATUSES and not completed_at:
        completed_at = timestamp
    conn.execute(
        """
        UPDATE executions
        SET status = ?, error_message = COALESCE(?, error_message), completed_at = ?, updated_at = ?
        WHERE execution_id = ?
        """,
        (status, error_message, completed_at, timestamp, execution_id),
    )
    if commit:
        conn.commit()
    return True


def mark_completed(
    conn: sqlite3.Connection,
    execution_id: str,
    row_count: int,
    processed: bool,
    now: str | None = None,
    commit: bool = True,
) -> bool:
    """COMPLETED with its row count. `processed` only ever moves from 0 to 1."""
    if not update_status(conn, execution_id, COMPLETED, now=now, commit=False):
        if commit:
            conn.commit()
        return False
    conn.execute(
        """
        UPDATE executions
        SET row_count = ?, processed = MAX(processed, ?)
        WHERE execution_id = ?
        """,
        (row_count, 1 if processed else 0, execution_id),
    )
    if commit:
        conn.commit()
    return True


def record_error(
    conn: sqlite3.Connection,
    execution_id: str,
    message: str,
    now: str | None = None,
    commit: bool = True,
) -> None:
    """Note a transient problem without touching status or `processed`."""
    conn.execute(
        "UPDATE executions SET error_message = ?, updated_at = ? WHERE execution_id = ?",
        (message[:1000], _now(now), execution_id),
    )
    if commit:
        conn.commit()


def count_by_status(conn: sqlite3.Connection) -> dict[str, int]:
    rows = conn.execute(
        "SELECT status, COUNT(*) AS count FROM executions GROUP BY status ORDER BY status"
    ).fetchall()
    return {row["status"]: int(row["count"]) for row in rows}
