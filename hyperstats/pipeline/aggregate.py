from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Any, Iterable

from hyperstats.db import store
from hyperstats.utils.parse import parse_float, positive
from hyperstats.utils.time import to_iso, utc_now

logger = logging.getLogger(__name__)


def is_visible(token: dict[str, Any]) -> bool:
    return (
        bool(token.get("enabled"))
        and not token.get("is_hidden")
        and not token.get("low_liquidity")
        and not token.get("low_volume")
    )


def compute_aggregate(rows: Iterable[dict[str, Any]]) -> dict[str, Any]:
    """Totals and averages over one latest snapshot per token.

    Sums only include positive values; `token_count` counts tokens with a
    positive market cap. Averages skip nulls and are None when nothing
    contributes.
    """
    total_market_cap = 0.0
    total_volume = 0.0
    total_liquidity = 0.0
    token_count = 0
    change_30m: list[float] = []
    change_24h: list[float] = []

    for row in rows:
        market_cap = parse_float(row.get("market_cap"))
        if positive(market_cap):
            total_market_cap += market_cap
            token_count += 1
        volume = parse_float(row.get("volume_24h"))
        if positive(volume):
            total_volume += volume
        liquidity = parse_float(row.get("liquidity_usd"))
        if positive(liquidity):
            total_liquidity += liquidity
        value_30m = parse_float(row.get("price_change_30m"))
        if value_30m is not None:
            change_30m.append(value_30m)
        value_24h = parse_float(row.get("price_change_24h"))
        if value_24h is not None:
            change_24h.append(value_24h)

    return {
        "total_market_cap": total_market_cap,
        "total_volume_24h": total_volume,
        "total_liquidity": total_liquidity,
        "token_count": token_count,
        "avg_price_change_30m": sum(change_30m) / len(change_30m) if change_30m else None,
        "avg_price_change_24h": sum(change_24h) / len(change_24h) if change_24h else None,
    }


def run_memes_metrics(conn: sqlite3.Connection, now: datetime | None = None) -> dict[str, Any]:
    tokens = store.fetch_enabled_tokens_with_latest_metric(conn)
    if not tokens:
        logger.info("No enabled tokens with snapshots; no summary row written")
        return {"inserted": False, "tokens_considered": 0, "all_tokens": None, "visible_tokens": None}

    all_tokens = compute_aggregate(tokens)
    visible = [token for token in tokens if is_visible(token)]
    visible_tokens = compute_aggregate(visible)
    recorded_at = to_iso(now or utc_now())
    row_id = store.insert_memes_metrics(conn, recorded_at, all_tokens, visible_tokens)
    logger.info(
        "Memes metrics row %s: %s tokens (%s visible), market cap %.2f",
        row_id,
        all_tokens["token_count"],
        visible_tokens["token_count"],
        all_tokens["total_market_cap"],
    )
    return {
        "inserted": True,
        "id": row_id,
        "recorded_at": recorded_at,
        "tokens_considered": len(tokens),
        "visible_considered": len(visible),
        "all_tokens": all_tokens,
        "visible_tokens": visible_tokens,
    }
