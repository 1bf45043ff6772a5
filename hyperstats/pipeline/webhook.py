from __future__ import annotations

import hashlib
import hmac
import logging
import sqlite3
from typing import Any

from hyperstats.db import ledger
from hyperstats.pipeline.poll import apply_provider_state
from hyperstats.utils.parse import parse_int

logger = logging.getLogger(__name__)


def sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign(body, secret), signature.strip().lower())


def handle_webhook_payload(conn: sqlite3.Connection, payload: dict[str, Any]) -> dict[str, Any]:
    """Reconcile one pushed execution result through the ledger.

    The ledger row is created when the execution is unseen. A delivery for
    an execution that is already processed changes nothing and is reported
    as a duplicate.
    """
    execution_id = payload.get("execution_id")
    query_id = parse_int(payload.get("query_id"))
    if not execution_id or query_id is None:
        raise ValueError("webhook payload needs execution_id and query_id")
    execution_id = str(execution_id)

    created = ledger.ensure_execution(conn, execution_id, query_id)
    execution = ledger.fetch_execution(conn, execution_id)
    if execution["processed"]:
        logger.info("Duplicate delivery for processed execution %s", execution_id)
        return {
            "execution_id": execution_id,
            "query_id": execution["query_id"],
            "outcome": "duplicate",
            "created": False,
        }

    detail = apply_provider_state(conn, execution, payload)
    detail["created"] = created
    logger.info("Webhook for execution %s: %s", execution_id, detail["outcome"])
    return detail
