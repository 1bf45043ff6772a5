from __future__ import annotations

import logging
import sqlite3
import time
from datetime import datetime
from typing import Any, Callable

from hyperstats.api.dune import FAILURE_STATES, STATE_COMPLETED, error_message, result_rows
from hyperstats.config import ExtendedPollConfig, PollerConfig
from hyperstats.db import ledger
from hyperstats.errors import ProviderUnavailable
from hyperstats.pipeline.results import process_results
from hyperstats.utils.time import iso_hours_ago, to_iso, utc_now

logger = logging.getLogger(__name__)

OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_RUNNING = "still_running"
OUTCOME_TIMED_OUT = "timed_out"
OUTCOME_UNCHANGED = "unchanged"


def apply_provider_state(
    conn: sqlite3.Connection,
    execution: dict[str, Any],
    payload: dict[str, Any],
    stale: bool = False,
    now: str | None = None,
) -> dict[str, Any]:
    """Fold one provider status payload into the ledger.

    Completed payloads go through the result processor; `processed` is only
    set when every row was stored or deliberately skipped. A non-terminal
    state on a stale execution becomes TIMEOUT.
    """
    execution_id = execution["execution_id"]
    state = str(payload.get("state") or "")
    detail: dict[str, Any] = {
        "execution_id": execution_id,
        "query_id": execution["query_id"],
        "provider_state": state,
    }

    if state == STATE_COMPLETED:
        rows = result_rows(payload)
        if execution.get("status") in ledger.UNPOLLABLE_STATUSES:
            logger.warning(
                "Ignoring %s rows for execution %s already closed as %s",
                len(rows),
                execution_id,
                execution["status"],
            )
            detail.update({"rows": len(rows), "stored": 0, "processed": False, "outcome": OUTCOME_UNCHANGED})
            return detail
        outcome = process_results(conn, execution["query_id"], rows, execution_id, now=now)
        changed = ledger.mark_completed(
            conn,
            execution_id,
            row_count=len(rows),
            processed=outcome.fully_stored,
            now=now,
        )
        detail.update(outcome.as_dict())
        detail["rows"] = len(rows)
        detail["processed"] = outcome.fully_stored and changed
        detail["outcome"] = OUTCOME_COMPLETED if changed else OUTCOME_UNCHANGED
        return detail

    if state in FAILURE_STATES:
        message = error_message(payload)
        changed = ledger.update_status(conn, execution_id, ledger.FAILED, error_message=message, now=now)
        detail["error"] = message
        detail["outcome"] = OUTCOME_FAILED if changed else OUTCOME_UNCHANGED
        return detail

    if stale:
        message = "Execution still not finished after the stale threshold"
        changed = ledger.update_status(conn, execution_id, ledger.TIMEOUT, error_message=message, now=now)
        detail["outcome"] = OUTCOME_TIMED_OUT if changed else OUTCOME_UNCHANGED
        return detail

    changed = ledger.update_status(conn, execution_id, state or ledger.RUNNING, now=now)
    detail["outcome"] = OUTCOME_RUNNING if changed else OUTCOME_UNCHANGED
    return detail


def poll_pending(
    conn: sqlite3.Connection,
    client,
    config: PollerConfig,
    run_logger=None,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or utc_now()
    now_iso = to_iso(now)
    created_since = iso_hours_ago(now, config.recency_hours)
    stale_before = iso_hours_ago(now, config.stale_hours)

    executions = ledger.fetch_pollable_executions(conn, created_since, config.batch_size)
    summary: dict[str, Any] = {
        "checked": 0,
        "completed": 0,
        "failed": 0,
        "still_running": 0,
        "timed_out": 0,
        "errors": 0,
        "details": [],
    }
    _progress(run_logger, f"Found {len(executions)} unprocessed executions to check")

    for execution in executions:
        execution_id = execution["execution_id"]
        summary["checked"] += 1
        try:
            payload = client.get_results(execution_id)
            detail = apply_provider_state(
                conn,
                execution,
                payload,
                stale=execution["created_at"] < stale_before,
                now=now_iso,
            )
        except ProviderUnavailable as exc:
            summary["errors"] += 1
            logger.warning("Status check failed for execution %s: %s", execution_id, exc)
            ledger.record_error(conn, execution_id, f"status check failed: {exc}", now=now_iso)
            detail = {
                "execution_id": execution_id,
                "query_id": execution["query_id"],
                "outcome": "error",
                "error": str(exc),
            }
        except Exception as exc:  # noqa: BLE001
            summary["errors"] += 1
            logger.exception("Unexpected error polling execution %s", execution_id)
            ledger.record_error(conn, execution_id, f"poll error: {exc}", now=now_iso)
            detail = {
                "execution_id": execution_id,
                "query_id": execution["query_id"],
                "outcome": "error",
                "error": str(exc),
            }
        else:
            outcome = detail["outcome"]
            if outcome in (OUTCOME_COMPLETED, OUTCOME_FAILED, OUTCOME_RUNNING, OUTCOME_TIMED_OUT):
                summary[outcome] += 1
            if outcome == OUTCOME_COMPLETED and detail.get("errors"):
                summary["errors"] += 1
        summary["details"].append(detail)
        _progress(run_logger, f"Execution {execution_id}: {detail['outcome']}", detail)

    logger.info(
        "Poll run checked=%s completed=%s failed=%s still_running=%s timed_out=%s errors=%s",
        summary["checked"],
        summary["completed"],
        summary["failed"],
        summary["still_running"],
        summary["timed_out"],
        summary["errors"],
    )
    return summary


def _progress(run_logger, message: str, details: dict[str, Any] | None = None) -> None:
    if run_logger is not None:
        run_logger.progress(message, details)


def extended_poll(
    conn: sqlite3.Connection,
    client,
    execution_id: str,
    config: ExtendedPollConfig,
    sleep: Callable[[float], None] = time.sleep,
    query_id: int | None = None,
) -> dict[str, Any]:
    """Block until one execution finishes or the attempt cap is reached.

    Polls once immediately, then sleeps through `config.delays_s` (the last
    delay repeats) between attempts. A transport error on one attempt does
    not end the loop.
    """
    execution = ledger.fetch_execution(conn, execution_id)
    if execution is None:
        if query_id is None:
            return {"success": False, "execution_id": execution_id, "error": "unknown execution"}
        ledger.ensure_execution(conn, execution_id, query_id)
        execution = ledger.fetch_execution(conn, execution_id)

    if execution["processed"]:
        return {
            "success": True,
            "execution_id": execution_id,
            "status": execution["status"],
            "message": "already processed",
            "attempts": 0,
        }
    if execution["status"] in ledger.UNPOLLABLE_STATUSES:
        return {
            "success": False,
            "execution_id": execution_id,
            "status": execution["status"],
            "error": execution["error_message"] or "execution already finished",
            "attempts": 0,
        }

    delays = list(config.delays_s) or [0]
    for attempt in range(config.max_attempts):
        if attempt > 0:
            sleep(delays[min(attempt - 1, len(delays) - 1)])
        try:
            payload = client.get_results(execution_id)
        except ProviderUnavailable as exc:
            logger.warning("Attempt %s for execution %s failed: %s", attempt + 1, execution_id, exc)
            continue
        detail = apply_provider_state(conn, execution, payload)
        outcome = detail["outcome"]
        if outcome == OUTCOME_COMPLETED:
            return {
                "success": detail["errors"] == 0,
                "execution_id": execution_id,
                "status": ledger.COMPLETED,
                "attempts": attempt + 1,
                "total_rows": detail["rows"],
                "stored": detail["stored"],
                "skipped": detail["skipped"],
                "errors": detail["errors"],
            }
        if outcome in (OUTCOME_FAILED, OUTCOME_UNCHANGED):
            current = ledger.fetch_execution(conn, execution_id)
            return {
                "success": False,
                "execution_id": execution_id,
                "status": current["status"],
                "attempts": attempt + 1,
                "error": detail.get("error") or current["error_message"],
            }

    message = f"Extended polling gave up after {config.max_attempts} attempts"
    ledger.update_status(conn, execution_id, ledger.TIMEOUT, error_message=message)
    logger.warning("Execution %s: %s", execution_id, message)
    return {
        "success": False,
        "execution_id": execution_id,
        "status": ledger.TIMEOUT,
        "attempts": config.max_attempts,
        "error": message,
    }
