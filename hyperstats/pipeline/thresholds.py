from __future__ import annotations

import logging
import sqlite3
from typing import Any

from hyperstats.config import ThresholdDefaults
from hyperstats.db import store
from hyperstats.utils.parse import parse_float

logger = logging.getLogger(__name__)


def get_filter_thresholds(conn: sqlite3.Connection, defaults: ThresholdDefaults) -> dict[str, Any]:
    fallback = {
        "min_liquidity_usd": defaults.min_liquidity_usd,
        "min_volume_usd": defaults.min_volume_usd,
        "source": "default",
    }
    try:
        row = store.fetch_filter_thresholds(conn)
    except sqlite3.Error as exc:
        logger.warning("Could not read filter thresholds, using defaults: %s", exc)
        return fallback
    if row is None:
        return fallback
    liquidity = parse_float(row.get("min_liquidity_usd"))
    volume = parse_float(row.get("min_volume_usd"))
    if liquidity is None or volume is None:
        return fallback
    return {"min_liquidity_usd": liquidity, "min_volume_usd": volume, "source": "db"}


def compute_flags(metric: dict[str, Any] | None, thresholds: dict[str, Any]) -> dict[str, bool]:
    """A missing measure counts as zero, so it is always below a positive threshold."""
    metric = metric or {}
    liquidity = parse_float(metric.get("liquidity_usd")) or 0.0
    volume = parse_float(metric.get("volume_24h")) or 0.0
    return {
        "low_liquidity": liquidity < thresholds["min_liquidity_usd"],
        "low_volume": volume < thresholds["min_volume_usd"],
    }


def evaluate_token_flags(
    conn: sqlite3.Connection,
    contract_address: str,
    thresholds: dict[str, Any],
    now: str | None = None,
) -> dict[str, Any] | None:
    """Recompute one token's low-liquidity / low-volume flags from its latest snapshot.

    Only flags that changed are written; `updated_at` is always refreshed.
    Returns None for an unknown token or when the check itself failed.
    """
    try:
        token = store.fetch_token(conn, contract_address)
        if token is None:
            logger.warning("Flag check for unknown token %s", contract_address)
            return None
        metric = store.fetch_latest_metric(conn, contract_address)
        if metric is None:
            store.touch_token(conn, contract_address, now=now)
            return {"contract_address": contract_address, "snapshot": False, "changed": {}}
        flags = compute_flags(metric, thresholds)
        changed = {name: value for name, value in flags.items() if bool(token[name]) != value}
        if changed:
            store.update_token_flags(conn, contract_address, changed, now=now)
            logger.info("Token %s flags changed: %s", contract_address, changed)
        else:
            store.touch_token(conn, contract_address, now=now)
        return {"contract_address": contract_address, "snapshot": True, "flags": flags, "changed": changed}
    except Exception:  # noqa: BLE001
        logger.exception("Flag check failed for token %s", contract_address)
        _touch_quietly(conn, contract_address, now)
        return None


def _touch_quietly(conn: sqlite3.Connection, contract_address: str, now: str | None) -> None:
    try:
        conn.rollback()
        store.touch_token(conn, contract_address, now=now)
    except sqlite3.Error as exc:
        logger.warning("Could not refresh updated_at for %s: %s", contract_address, exc)


def refresh_token_flags(conn: sqlite3.Connection, thresholds: dict[str, Any]) -> dict[str, Any]:
    addresses = store.fetch_enabled_token_addresses(conn)
    summary: dict[str, Any] = {"checked": 0, "changed": 0, "errors": 0, "thresholds": thresholds}
    for address in addresses:
        result = evaluate_token_flags(conn, address, thresholds)
        summary["checked"] += 1
        if result is None:
            summary["errors"] += 1
        elif result["changed"]:
            summary["changed"] += 1
    logger.info(
        "Token flag refresh: checked=%s changed=%s errors=%s",
        summary["checked"],
        summary["changed"],
        summary["errors"],
    )
    return summary
