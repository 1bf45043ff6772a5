from __future__ import annotations

import re

import pytest

from hyperstats.db.run_log import RunLogger, fetch_run_logs, new_run_id, summarize_run_logs

SINCE = "2000-01-01T00:00:00+00:00"


def test_run_id_format() -> None:
    assert re.fullmatch(r"memes_metrics_\d{13}_[0-9a-f]{9}", new_run_id("memes_metrics"))


@pytest.mark.parametrize(
    ("success_count", "error_count", "expected"),
    [(3, 0, "COMPLETED"), (0, 0, "COMPLETED"), (2, 1, "PARTIAL_FAILURE"), (0, 2, "FAILED")],
)
def test_completion_status(conn, success_count, error_count, expected) -> None:
    run_logger = RunLogger(conn, "token_refresh")
    run_logger.start()

    status = run_logger.complete({"checked": 3}, success_count=success_count, error_count=error_count)

    assert status == expected
    [log] = fetch_run_logs(conn, SINCE)
    assert log["status"] == expected
    assert log["results"] == {"checked": 3}
    assert log["success_count"] == success_count
    assert log["completed_at"] is not None


def test_progress_and_duration_are_recorded(conn) -> None:
    ticks = iter([100.0, 100.0, 102.5, 102.5])
    run_logger = RunLogger(conn, "poll_dune_results", run_id="poll_1", clock=lambda: next(ticks))
    run_logger.start()
    run_logger.progress("Found 2 unprocessed executions to check", {"count": 2})

    run_logger.complete({}, success_count=2)

    [log] = fetch_run_logs(conn, SINCE)
    assert log["run_id"] == "poll_1"
    assert log["duration_ms"] == 2500
    assert log["progress"][0]["message"] == "Found 2 unprocessed executions to check"
    assert log["progress"][0]["details"] == {"count": 2}


def test_error_marks_run_failed(conn) -> None:
    run_logger = RunLogger(conn, "cmc_sync")
    run_logger.start()

    assert run_logger.error("CMC_PRO_API_KEY is not configured") == "FAILED"

    [log] = fetch_run_logs(conn, SINCE)
    assert log["status"] == "FAILED"
    assert log["error_message"] == "CMC_PRO_API_KEY is not configured"
    assert log["results"] is None


def test_log_write_failure_does_not_raise(conn) -> None:
    conn.execute("DROP TABLE run_logs")
    run_logger = RunLogger(conn, "memes_metrics")

    run_logger.start()
    run_logger.progress("still going")

    assert run_logger.complete({}, success_count=1) == "COMPLETED"


def test_summary_counts_by_type(conn) -> None:
    for run_type, errors in (("cmc_sync", 0), ("cmc_sync", 1), ("memes_metrics", 0)):
        run_logger = RunLogger(conn, run_type)
        run_logger.start()
        run_logger.complete({}, success_count=0, error_count=errors)

    summary = summarize_run_logs(conn, SINCE)

    assert summary["total_runs"] == 3
    assert summary["successful_runs"] == 2
    assert summary["failed_runs"] == 1
    assert summary["by_type"]["cmc_sync"]["total"] == 2
    assert summary["by_type"]["cmc_sync"]["failed"] == 1
    assert summary["by_type"]["memes_metrics"]["successful"] == 1
