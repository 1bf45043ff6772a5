from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from typing import Any, Callable

from hyperstats.utils.time import to_iso, utc_now

logger = logging.getLogger(__name__)

RUNNING = "RUNNING"
COMPLETED = "COMPLETED"
PARTIAL_FAILURE = "PARTIAL_FAILURE"
FAILED = "FAILED"


def new_run_id(run_type: str) -> str:
    return f"{run_type}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class RunLogger:
    """Persisted record of one scheduled invocation.

    Writes are best effort: a failure to log is reported through `logging`
    and never interrupts the job being logged.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        run_type: str,
        run_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.conn = conn
        self.run_type = run_type
        self.run_id = run_id or new_run_id(run_type)
        self.clock = clock
        self._started = clock()
        self._progress: list[dict[str, Any]] = []

    def duration_ms(self) -> int:
        return int((self.clock() - self._started) * 1000)

    def start(self) -> str:
        self._started = self.clock()
        now = to_iso(utc_now())
        self._write(
            """
            INSERT INTO run_logs (run_id, run_type, status, started_at, updated_at, progress_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (self.run_id, self.run_type, RUNNING, now, now, "[]"),
        )
        return self.run_id

    def progress(self, message: str, details: dict[str, Any] | None = None) -> None:
        self._progress.append(
            {"timestamp": to_iso(utc_now()), "message": message, "details": details or {}}
        )
        self._write(
            "UPDATE run_logs SET progress_json = ?, updated_at = ? WHERE run_id = ?",
            (json.dumps(self._progress, default=str), to_iso(utc_now()), self.run_id),
        )

    def complete(
        self,
        results: dict[str, Any] | None = None,
        success_count: int = 0,
        error_count: int = 0,
    ) -> str:
        if error_count == 0:
            status = COMPLETED
        elif success_count > 0:
            status = PARTIAL_FAILURE
        else:
            status = FAILED
        now = to_iso(utc_now())
        self._write(
            """
            UPDATE run_logs
            SET status = ?, completed_at = ?, updated_at = ?, duration_ms = ?,
                success_count = ?, error_count = ?, results_json = ?
            WHERE run_id = ?
            """,
            (
                status,
                now,
                now,
                self.duration_ms(),
                success_count,
                error_count,
                json.dumps(results or {}, default=str),
                self.run_id,
            ),
        )
        return status

    def error(self, message: str, results: dict[str, Any] | None = None) -> str:
        now = to_iso(utc_now())
        self._write(
            """
            UPDATE run_logs
            SET status = ?, completed_at = ?, updated_at = ?, duration_ms = ?,
                error_message = ?, results_json = COALESCE(?, results_json)
            WHERE run_id = ?
            """,
            (
                FAILED,
                now,
                now,
                self.duration_ms(),
                message[:1000],
                json.dumps(results, default=str) if results is not None else None,
                self.run_id,
            ),
        )
        return FAILED

    def _write(self, sql: str, params: tuple[Any, ...]) -> None:
        try:
            self.conn.execute(sql, params)
            self.conn.commit()
        except sqlite3.Error as exc:
            logger.warning("Run log write failed for %s: %s", self.run_id, exc)


def fetch_run_logs(
    conn: sqlite3.Connection,
    since: str,
    limit: int = 50,
) -> list[dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT * FROM run_logs
        WHERE started_at >= ?
        ORDER BY started_at DESC
        LIMIT ?
        """,
        (since, limit),
    ).fetchall()
    logs = []
    for row in rows:
        record = dict(row)
        for field in ("progress_json", "results_json"):
            raw = record.pop(field)
            record[field[: -len("_json")]] = json.loads(raw) if raw else None
        logs.append(record)
    return logs


def summarize_run_logs(conn: sqlite3.Connection, since: str) -> dict[str, Any]:
    rows = conn.execute(
        "SELECT run_type, status, started_at FROM run_logs WHERE started_at >= ? ORDER BY started_at DESC",
        (since,),
    ).fetchall()
    summary: dict[str, Any] = {
        "total_runs": len(rows),
        "successful_runs": 0,
        "failed_runs": 0,
        "partial_failures": 0,
        "last_run": rows[0]["started_at"] if rows else None,
        "by_type": {},
    }
    for row in rows:
        status = row["status"]
        if status == COMPLETED:
            summary["successful_runs"] += 1
        elif status == FAILED:
            summary["failed_runs"] += 1
        elif status == PARTIAL_FAILURE:
            summary["partial_failures"] += 1
        per_type = summary["by_type"].setdefault(
            row["run_type"], {"total": 0, "successful": 0, "failed": 0, "last_run": row["started_at"]}
        )
        per_type["total"] += 1
        if status == COMPLETED:
            per_type["successful"] += 1
        elif status in (FAILED, PARTIAL_FAILURE):
            per_type["failed"] += 1
    return summary
