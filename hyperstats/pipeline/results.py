from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from hyperstats.db import store
from hyperstats.errors import PartialRowError
from hyperstats.utils.parse import parse_float, parse_int
from hyperstats.utils.time import utc_day

logger = logging.getLogger(__name__)

WALLET_FLOW_QUERY_ID = 5184581
PROTOCOL_TVL_QUERY_ID = 5184111
REVENUE_QUERY_ID = 5184711

RowMapper = Callable[[dict[str, Any]], dict[str, Any]]


@dataclass(frozen=True)
class MapperEntry:
    query_id: int
    table: str
    key_columns: tuple[str, ...]
    func: RowMapper


@dataclass
class ProcessOutcome:
    query_id: int
    table: str | None
    stored: int = 0
    skipped: int = 0
    errors: int = 0
    error_messages: list[str] = field(default_factory=list)

    @property
    def fully_stored(self) -> bool:
        return self.errors == 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "query_id": self.query_id,
            "table": self.table,
            "stored": self.stored,
            "skipped": self.skipped,
            "errors": self.errors,
        }


MAPPERS: dict[int, MapperEntry] = {}


def register_mapper(query_id: int, table: str, key_columns: Iterable[str]) -> Callable[[RowMapper], RowMapper]:
    """Route result rows of `query_id` through the decorated function into `table`."""
    key_columns = tuple(key_columns)
    if table not in store.NORMALIZED_TABLES:
        raise ValueError(f"{table} is not a normalized table")
    if key_columns != store.NORMALIZED_TABLES[table]["key"]:
        raise ValueError(f"{table} is keyed on {store.NORMALIZED_TABLES[table]['key']}, not {key_columns}")

    def decorator(func: RowMapper) -> RowMapper:
        MAPPERS[query_id] = MapperEntry(query_id=query_id, table=table, key_columns=key_columns, func=func)
        return func

    return decorator


def mapper_for(query_id: int) -> MapperEntry | None:
    return MAPPERS.get(int(query_id))


def _require_day(row: dict[str, Any], column: str) -> str:
    day = utc_day(row.get(column))
    if day is None:
        raise PartialRowError(f"unparseable {column}: {row.get(column)!r}", row=row)
    return day


@register_mapper(WALLET_FLOW_QUERY_ID, "wallet_flow_daily", ("block_day",))
def map_wallet_flow(row: dict[str, Any]) -> dict[str, Any]:
    address_count = parse_int(row.get("address_count"))
    return {
        "block_day": _require_day(row, "block_day"),
        "address_count": address_count,
        "deposit": parse_float(row.get("deposit")),
        "withdraw": parse_float(row.get("withdraw")),
        "netflow": parse_float(row.get("netflow")),
        "total_wallets": address_count,
        "tvl": parse_float(row.get("TVL", row.get("tvl"))),
    }


@register_mapper(PROTOCOL_TVL_QUERY_ID, "protocol_tvl_daily", ("day", "protocol_name"))
def map_protocol_tvl(row: dict[str, Any]) -> dict[str, Any]:
    protocol_name = row.get("protocol_name")
    if not isinstance(protocol_name, str) or not protocol_name.strip():
        raise PartialRowError("missing protocol_name", row=row)
    return {
        "day": _require_day(row, "day"),
        "protocol_name": protocol_name.strip(),
        "daily_tvl": parse_float(row.get("daily_tvl")),
        "total_daily_tvl": parse_float(row.get("total_daily_tvl")),
    }


@register_mapper(REVENUE_QUERY_ID, "daily_revenue", ("day",))
def map_revenue(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "day": _require_day(row, "day"),
        "revenue": parse_float(row.get("revenue")),
        "annualized_revenue": parse_float(row.get("annualized_revenue")),
    }


def process_results(
    conn: sqlite3.Connection,
    query_id: int,
    rows: Iterable[dict[str, Any]],
    execution_id: str,
    now: str | None = None,
) -> ProcessOutcome:
    """Map and upsert provider rows for one execution.

    Rows whose natural key cannot be derived are skipped; rows that fail to
    store are counted as errors. Neither stops the loop. Running this twice
    over the same rows leaves the same stored state.
    """
    mapper = mapper_for(query_id)
    if mapper is None:
        logger.warning("No mapper registered for query %s (execution %s); nothing stored", query_id, execution_id)
        return ProcessOutcome(query_id=int(query_id), table=None)

    outcome = ProcessOutcome(query_id=mapper.query_id, table=mapper.table)
    for row in rows:
        try:
            record = mapper.func(row)
        except PartialRowError as exc:
            outcome.skipped += 1
            logger.warning("Skipping row for query %s: %s", query_id, exc)
            continue
        record["execution_id"] = execution_id
        record["query_id"] = mapper.query_id
        try:
            store.upsert_normalized(conn, mapper.table, record, now=now, commit=False)
            conn.commit()
        except (sqlite3.Error, ValueError) as exc:
            conn.rollback()
            outcome.errors += 1
            outcome.error_messages.append(str(exc))
            logger.error("Failed to store %s row %s: %s", mapper.table, record, exc)
            continue
        outcome.stored += 1
    logger.info(
        "Query %s execution %s: stored=%s skipped=%s errors=%s",
        query_id,
        execution_id,
        outcome.stored,
        outcome.skipped,
        outcome.errors,
    )
    return outcome
