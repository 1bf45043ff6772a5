from __future__ import annotations

import sqlite3
from typing import Any

from hyperstats.db import store
from hyperstats.utils.time import to_iso, utc_now

PERIOD_DAYS = {"7d": 7, "30d": 30, "90d": 90, "max": None}
DEFAULT_PERIOD = "7d"


def normalize_period(period: str | None) -> str:
    period = (period or DEFAULT_PERIOD).lower()
    return period if period in PERIOD_DAYS else DEFAULT_PERIOD


def _tail(rows: list[dict[str, Any]], period: str) -> list[dict[str, Any]]:
    days = PERIOD_DAYS[period]
    return rows if days is None else rows[-days:]


def wallet_flow_summary(rows: list[dict[str, Any]], period: str) -> dict[str, Any] | None:
    """Headline wallet/flow numbers plus cumulative series for the period.

    `rows` are ordered by block_day ascending. TVL is the running sum of
    netflow, seeded with everything before the period window.
    """
    if not rows:
        return None
    window = _tail(rows, period)
    latest = rows[-1]
    previous = rows[-2] if len(rows) > 1 else None

    cumulative_tvl = 0.0
    cumulative_wallets = 0
    for row in rows[: len(rows) - len(window)]:
        cumulative_tvl += row.get("netflow") or 0
        cumulative_wallets += row.get("address_count") or 0

    historical_tvl = []
    historical_wallets = []
    for row in window:
        cumulative_tvl += row.get("netflow") or 0
        cumulative_wallets += row.get("address_count") or 0
        historical_tvl.append({"date": row["block_day"], "value": cumulative_tvl})
        historical_wallets.append(
            {"date": row["block_day"], "value": row.get("address_count") or 0, "cumulative": cumulative_wallets}
        )

    if previous is not None:
        wallet_delta = (latest.get("address_count") or 0) - (previous.get("address_count") or 0)
        tvl_change = (latest.get("netflow") or 0) - (previous.get("netflow") or 0)
    else:
        wallet_delta = latest.get("address_count") or 0
        tvl_change = 0

    return {
        "total_wallets": sum(row.get("address_count") or 0 for row in rows),
        "tvl": sum(row.get("netflow") or 0 for row in rows),
        "netflow": latest.get("netflow") or 0,
        "daily_new_wallets": abs(wallet_delta),
        "tvl_change": tvl_change,
        "previous_day_tvl": (previous or {}).get("netflow") or 0,
        "previous_day_wallets": (previous or {}).get("address_count") or 0,
        "address_count": latest.get("address_count") or 0,
        "last_updated": latest.get("updated_at") or latest.get("created_at"),
        "execution_id": latest.get("execution_id"),
        "total_rows_in_db": len(rows),
        "historical_tvl": historical_tvl,
        "historical_wallets": historical_wallets,
    }


def revenue_summary(rows: list[dict[str, Any]], period: str) -> dict[str, Any]:
    """`rows` are ordered by day ascending."""
    if not rows:
        return {
            "daily_revenue": 0,
            "daily_change": 0,
            "annualized_revenue": 0,
            "last_updated": None,
            "historical_daily_revenue": [],
            "historical_annualized_revenue": [],
        }
    latest = rows[-1]
    previous = rows[-2] if len(rows) > 1 else None
    current = latest.get("revenue") or 0
    window = _tail(rows, period)
    return {
        "daily_revenue": current,
        "daily_change": current - (previous.get("revenue") or 0) if previous else 0,
        "previous_day_revenue": (previous or {}).get("revenue") or 0,
        "annualized_revenue": latest.get("annualized_revenue") or 0,
        "last_updated": latest.get("updated_at") or latest.get("created_at"),
        "latest_day": latest["day"],
        "previous_day": previous["day"] if previous else None,
        "data_source": "DeFiLlama" if latest.get("query_id") == 999999 else "Dune",
        "historical_daily_revenue": [{"date": row["day"], "value": row.get("revenue") or 0} for row in window],
        "historical_annualized_revenue": [
            {"date": row["day"], "value": row.get("annualized_revenue") or 0} for row in window
        ],
    }


def combined_metrics(conn: sqlite3.Connection, period: str | None) -> dict[str, Any]:
    period = normalize_period(period)
    return {
        "period": period,
        "dune": wallet_flow_summary(store.fetch_normalized(conn, "wallet_flow_daily"), period),
        "revenue": revenue_summary(store.fetch_normalized(conn, "daily_revenue"), period),
        "cached_at": to_iso(utc_now()),
    }
