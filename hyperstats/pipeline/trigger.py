from __future__ import annotations

import logging
import sqlite3
from typing import Any

from hyperstats.db import ledger
from hyperstats.errors import UntrackedExecution

logger = logging.getLogger(__name__)


def trigger_query(
    conn: sqlite3.Connection,
    client,
    query_id: int,
    run_id: str | None = None,
    now: str | None = None,
) -> dict[str, Any]:
    """Start a provider execution for `query_id` and record it as PENDING.

    Provider failures propagate as ProviderUnavailable. If the provider
    accepted the job but the ledger insert fails, UntrackedExecution is
    raised with the orphaned execution id.
    """
    execution_id = client.execute_query(query_id)
    logger.info("Query %s started as execution %s", query_id, execution_id)
    try:
        ledger.insert_execution(
            conn,
            execution_id,
            query_id,
            status=ledger.PENDING,
            trigger_run_id=run_id,
            now=now,
        )
    except sqlite3.Error as exc:
        logger.error("Execution %s for query %s is untracked: %s", execution_id, query_id, exc)
        raise UntrackedExecution(
            f"execution {execution_id} started but could not be recorded: {exc}",
            execution_id=execution_id,
            query_id=query_id,
        ) from exc
    return {
        "execution_id": execution_id,
        "query_id": query_id,
        "status": ledger.PENDING,
    }
