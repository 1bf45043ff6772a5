from __future__ import annotations

import pytest

from conftest import completed
from hyperstats.db import ledger, store
from hyperstats.pipeline.webhook import handle_webhook_payload, sign, verify_signature

ROWS = [{"day": "2025-05-01", "revenue": 12.5, "annualized_revenue": 4000}]


def test_signature_round_trip() -> None:
    body = b'{"execution_id": "E1"}'
    signature = sign(body, "hook-secret")

    assert verify_signature(body, signature, "hook-secret")
    assert verify_signature(body, signature.upper(), "hook-secret")
    assert not verify_signature(body, signature, "other-secret")
    assert not verify_signature(body + b" ", signature, "hook-secret")
    assert not verify_signature(body, None, "hook-secret")


def test_webhook_for_unseen_execution_creates_and_processes(conn) -> None:
    payload = {"execution_id": "E1", "query_id": "5184711", **completed(ROWS)}

    detail = handle_webhook_payload(conn, payload)

    assert detail["created"] is True
    assert detail["outcome"] == "completed"
    assert detail["stored"] == 1
    row = ledger.fetch_execution(conn, "E1")
    assert row["status"] == "COMPLETED"
    assert row["processed"] == 1
    assert store.fetch_normalized(conn, "daily_revenue")[0]["revenue"] == 12.5


def test_duplicate_delivery_changes_nothing(conn) -> None:
    payload = {"execution_id": "E1", "query_id": 5184711, **completed(ROWS)}
    handle_webhook_payload(conn, payload)
    before = store.fetch_normalized(conn, "daily_revenue")

    detail = handle_webhook_payload(conn, {**payload, "result": {"rows": [{"day": "2025-05-01", "revenue": 1}]}})

    assert detail["outcome"] == "duplicate"
    assert store.fetch_normalized(conn, "daily_revenue") == before


def test_webhook_for_tracked_execution_uses_existing_row(conn) -> None:
    ledger.insert_execution(conn, "E1", 5184711, trigger_run_id="trigger_run")

    detail = handle_webhook_payload(conn, {"execution_id": "E1", "query_id": 5184711, "state": "QUERY_STATE_FAILED"})

    assert detail["created"] is False
    assert detail["outcome"] == "failed"
    row = ledger.fetch_execution(conn, "E1")
    assert row["status"] == "FAILED"
    assert row["trigger_run_id"] == "trigger_run"


def test_late_results_for_a_failed_execution_are_not_stored(conn) -> None:
    ledger.insert_execution(conn, "E1", 5184711)
    ledger.update_status(conn, "E1", ledger.FAILED, error_message="timed out on provider")
    payload = {"execution_id": "E1", "query_id": 5184711, **completed(ROWS)}

    detail = handle_webhook_payload(conn, payload)

    assert detail["outcome"] == "unchanged"
    assert detail["stored"] == 0
    assert store.fetch_normalized(conn, "daily_revenue") == []
    row = ledger.fetch_execution(conn, "E1")
    assert row["status"] == "FAILED"
    assert row["processed"] == 0


def test_payload_without_ids_is_rejected(conn) -> None:
    with pytest.raises(ValueError):
        handle_webhook_payload(conn, {"state": "QUERY_STATE_COMPLETED"})
    with pytest.raises(ValueError):
        handle_webhook_payload(conn, {"execution_id": "E1", "query_id": "abc"})
    assert store.count_rows(conn, "executions") == 0
