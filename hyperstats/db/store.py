from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Sequence

from hyperstats.db.schema import SCHEMA_SQL
from hyperstats.utils.time import to_iso, utc_now

# Normalized tables: natural key columns and measurement columns. Every write
# path goes through upsert_normalized, so each natural key holds at most one row.
NORMALIZED_TABLES: dict[str, dict[str, tuple[str, ...]]] = {
    "wallet_flow_daily": {
        "key": ("block_day",),
        "values": ("address_count", "deposit", "withdraw", "netflow", "total_wallets", "tvl"),
    },
    "protocol_tvl_daily": {
        "key": ("day", "protocol_name"),
        "values": ("daily_tvl", "total_daily_tvl"),
    },
    "daily_revenue": {
        "key": ("day",),
        "values": ("revenue", "annualized_revenue"),
    },
}

PROVENANCE_COLUMNS = ("execution_id", "query_id")

TOKEN_COLUMNS = (
    "contract_address",
    "gecko_id",
    "name",
    "symbol",
    "pair_address",
    "pair_created_at",
    "dex_id",
    "chain_id",
    "image_url",
    "enabled",
    "is_hidden",
    "low_liquidity",
    "low_volume",
)

METRIC_COLUMNS = (
    "price_usd",
    "market_cap",
    "fdv",
    "volume_24h",
    "liquidity_usd",
    "price_change_30m",
    "price_change_24h",
)

SUMMARY_FIELDS = (
    "total_market_cap",
    "total_volume_24h",
    "total_liquidity",
    "token_count",
    "avg_price_change_30m",
    "avg_price_change_24h",
)


def get_connection(db_path: Path | str) -> sqlite3.Connection:
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    _ensure_column(conn, "executions", "trigger_run_id", "TEXT")
    _ensure_column(conn, "tokens", "low_volume", "INTEGER NOT NULL DEFAULT 0")
    conn.commit()


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
    try:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
    except sqlite3.OperationalError:
        return


def _now(now: str | None) -> str:
    return now or to_iso(utc_now())


# Normalized metric tables


def upsert_normalized(
    conn: sqlite3.Connection,
    table: str,
    record: dict[str, Any],
    now: str | None = None,
    commit: bool = True,
) -> None:
    """Insert-or-update one row on the table's natural key.

    `created_at` is only written on insert; measurement, provenance and
    `updated_at` columns are overwritten on conflict (last write wins).
    """
    layout = NORMALIZED_TABLES[table]
    key_columns = layout["key"]
    for column in key_columns:
        if record.get(column) in (None, ""):
            raise ValueError(f"{table} record missing natural key column {column}")
    value_columns = layout["values"] + PROVENANCE_COLUMNS
    columns = key_columns + value_columns + ("created_at", "updated_at")
    timestamp = _now(now)
    params = [record.get(column) for column in key_columns + value_columns] + [timestamp, timestamp]
    assignments = ", ".join(f"{column} = excluded.{column}" for column in value_columns + ("updated_at",))
    conn.execute(
        f"""
        INSERT INTO {table} ({", ".join(columns)})
        VALUES ({", ".join("?" for _ in columns)})
        ON CONFLICT ({", ".join(key_columns)}) DO UPDATE SET {assignments}
        """,
        params,
    )
    if commit:
        conn.commit()


def fetch_normalized(conn: sqlite3.Connection, table: str) -> list[dict[str, Any]]:
    layout = NORMALIZED_TABLES[table]
    order = ", ".join(layout["key"])
    rows = conn.execute(f"SELECT * FROM {table} ORDER BY {order}").fetchall()
    return [dict(row) for row in rows]


# Tokens and token metric snapshots


def fetch_token(conn: sqlite3.Connection, contract_address: str) -> dict[str, Any] | None:
    row = conn.execute(
        "SELECT * FROM tokens WHERE contract_address = ?",
        (contract_address,),
    ).fetchone()
    return dict(row) if row else None


def insert_token(
    conn: sqlite3.Connection,
    token: dict[str, Any],
    now: str | None = None,
    commit: bool = True,
) -> None:
    timestamp = _now(now)
    values = []
    for column in TOKEN_COLUMNS:
        value = token.get(column)
        if column in ("enabled",):
            value = 1 if value is None or value else 0
        elif column in ("is_hidden", "low_liquidity", "low_volume"):
            value = 1 if value else 0
        values.append(value)
    conn.execute(
        f"""
        INSERT INTO tokens ({", ".join(TOKEN_COLUMNS)}, created_at, updated_at)
        VALUES ({", ".join("?" for _ in TOKEN_COLUMNS)}, ?, ?)
        """,
        (*values, timestamp, timestamp),
    )
    if commit:
        conn.commit()


def touch_token(
    conn: sqlite3.Connection,
    contract_address: str,
    now: str | None = None,
    commit: bool = True,
) -> None:
    conn.execute(
        "UPDATE tokens SET updated_at = ? WHERE contract_address = ?",
        (_now(now), contract_address),
    )
    if commit:
        conn.commit()


def update_token_flags(
    conn: sqlite3.Connection,
    contract_address: str,
    flags: dict[str, bool],
    now: str | None = None,
    commit: bool = True,
) -> None:
    allowed = {"low_liquidity", "low_volume"}
    assignments = []
    params: list[Any] = []
    for column, value in flags.items():
        if column not in allowed:
            raise ValueError(f"unsupported token flag {column}")
        assignments.append(f"{column} = ?")
        params.append(1 if value else 0)
    assignments.append("updated_at = ?")
    params.append(_now(now))
    params.append(contract_address)
    conn.execute(
        f"UPDATE tokens SET {', '.join(assignments)} WHERE contract_address = ?",
        params,
    )
    if commit:
        conn.commit()


def fetch_enabled_token_addresses(conn: sqlite3.Connection) -> list[str]:
    rows = conn.execute(
        "SELECT contract_address FROM tokens WHERE enabled = 1 ORDER BY contract_address"
    ).fetchall()
    return [row["contract_address"] for row in rows]


def disable_inactive_tokens(
    conn: sqlite3.Connection,
    cutoff: str,
    now: str | None = None,
    commit: bool = True,
) -> list[str]:
    rows = conn.execute(
        "SELECT contract_address FROM tokens WHERE enabled = 1 AND updated_at < ? ORDER BY contract_address",
        (cutoff,),
    ).fetchall()
    addresses = [row["contract_address"] for row in rows]
    if addresses:
        conn.executemany(
            "UPDATE tokens SET enabled = 0, updated_at = ? WHERE contract_address = ?",
            [(_now(now), address) for address in addresses],
        )
    if commit:
        conn.commit()
    return addresses


def insert_token_metric(
    conn: sqlite3.Connection,
    contract_address: str,
    metric: dict[str, Any],
    recorded_at: str | None = None,
    commit: bool = True,
) -> None:
    conn.execute(
        f"""
        INSERT INTO token_metrics (contract_address, {", ".join(METRIC_COLUMNS)}, recorded_at)
        VALUES (?, {", ".join("?" for _ in METRIC_COLUMNS)}, ?)
        """,
        (contract_address, *[metric.get(column) for column in METRIC_COLUMNS], _now(recorded_at)),
    )
    if commit:
        conn.commit()


def fetch_latest_metric(conn: sqlite3.Connection, contract_address: str) -> dict[str, Any] | None:
    row = conn.execute(
        """
        SELECT * FROM token_metrics
        WHERE contract_address = ?
        ORDER BY recorded_at DESC, id DESC
        LIMIT 1
        """,
        (contract_address,),
    ).fetchone()
    return dict(row) if row else None


def fetch_enabled_tokens_with_latest_metric(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    """One row per enabled token that has at least one snapshot."""
    rows = conn.execute(
        f"""
        SELECT t.contract_address, t.symbol, t.enabled, t.is_hidden, t.low_liquidity, t.low_volume,
               {", ".join(f"m.{column}" for column in METRIC_COLUMNS)}, m.recorded_at
        FROM tokens t
        JOIN token_metrics m ON m.id = (
            SELECT id FROM token_metrics
            WHERE contract_address = t.contract_address
            ORDER BY recorded_at DESC, id DESC
            LIMIT 1
        )
        WHERE t.enabled = 1
        ORDER BY t.contract_address
        """
    ).fetchall()
    results = []
    for row in rows:
        record = dict(row)
        for flag in ("enabled", "is_hidden", "low_liquidity", "low_volume"):
            record[flag] = bool(record[flag])
        results.append(record)
    return results


# Summary and snapshot tables (append-only)


def insert_memes_metrics(
    conn: sqlite3.Connection,
    recorded_at: str,
    all_tokens: dict[str, Any],
    visible_tokens: dict[str, Any],
    commit: bool = True,
) -> int:
    visible_fields = tuple(f"visible_{field}" for field in SUMMARY_FIELDS)
    columns = ("recorded_at", "created_at") + SUMMARY_FIELDS + visible_fields
    params = (
        [recorded_at, to_iso(utc_now())]
        + [all_tokens.get(field) for field in SUMMARY_FIELDS]
        + [visible_tokens.get(field) for field in SUMMARY_FIELDS]
    )
    cursor = conn.execute(
        f"INSERT INTO memes_metrics ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
        params,
    )
    if commit:
        conn.commit()
    return int(cursor.lastrowid)


def fetch_memes_metrics(conn: sqlite3.Connection, limit: int = 100) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM memes_metrics ORDER BY recorded_at DESC, id DESC LIMIT ?",
        (limit,),
    ).fetchall()
    return [dict(row) for row in rows]


def fetch_filter_thresholds(conn: sqlite3.Connection) -> dict[str, Any] | None:
    row = conn.execute(
        "SELECT min_liquidity_usd, min_volume_usd, updated_at FROM filter_thresholds WHERE id = 1"
    ).fetchone()
    return dict(row) if row else None


def set_filter_thresholds(
    conn: sqlite3.Connection,
    min_liquidity_usd: float,
    min_volume_usd: float,
    commit: bool = True,
) -> None:
    conn.execute(
        """
        INSERT INTO filter_thresholds (id, min_liquidity_usd, min_volume_usd, updated_at)
        VALUES (1, ?, ?, ?)
        ON CONFLICT (id) DO UPDATE SET
            min_liquidity_usd = excluded.min_liquidity_usd,
            min_volume_usd = excluded.min_volume_usd,
            updated_at = excluded.updated_at
        """,
        (min_liquidity_usd, min_volume_usd, to_iso(utc_now())),
    )
    if commit:
        conn.commit()


def insert_cmc_quote(
    conn: sqlite3.Connection,
    quote: dict[str, Any],
    commit: bool = True,
) -> int:
    columns = (
        "symbol",
        "price",
        "market_cap",
        "percent_change_24h",
        "fully_diluted_market_cap",
        "volume_24h",
        "volume_change_24h",
        "synced_at",
    )
    cursor = conn.execute(
        f"INSERT INTO cmc_quotes ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
        [quote.get(column) for column in columns],
    )
    if commit:
        conn.commit()
    return int(cursor.lastrowid)


def count_rows(conn: sqlite3.Connection, table: str, where: str = "", params: Sequence[Any] = ()) -> int:
    clause = f" WHERE {where}" if where else ""
    row = conn.execute(f"SELECT COUNT(*) AS count FROM {table}{clause}", tuple(params)).fetchone()
    return int(row["count"]) if row else 0


