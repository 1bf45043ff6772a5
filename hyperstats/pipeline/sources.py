from __future__ import annotations

import logging
import re
import sqlite3
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Sequence

from hyperstats.config import GeckoConfig
from hyperstats.db import store
from hyperstats.errors import ProviderUnavailable
from hyperstats.pipeline.thresholds import compute_flags
from hyperstats.utils.parse import parse_float
from hyperstats.utils.time import to_iso, utc_day, utc_now

logger = logging.getLogger(__name__)

LLAMA_REVENUE_QUERY_ID = 999999
DEFAULT_CHAIN_KEYS = ("Hyperliquid L1", "Hyperliquid")
REVENUE_WINDOW_DAYS = 7
ADDRESS_RE = re.compile(r"^0x[a-f0-9]{40}$")
FALLBACK_IMAGE_URL = "https://dd.dexscreener.com/ds-data/tokens/hyperevm/{address}.png"


def _dig(value: Any, *keys: str) -> Any:
    """Walk nested dicts; None as soon as a level is missing or not a dict."""
    for key in keys:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


# DeFiLlama protocol TVL


def latest_chain_point(protocol: dict[str, Any], chain_keys: Sequence[str] = DEFAULT_CHAIN_KEYS) -> tuple[str, float | None] | None:
    for key in chain_keys:
        series = _dig(protocol, "chainTvls", key, "tvl")
        if isinstance(series, list) and series:
            last = series[-1]
            if not isinstance(last, dict):
                return None
            day = utc_day(last.get("date"))
            if day is None:
                return None
            return day, parse_float(last.get("totalLiquidityUSD"))
    return None


def sync_llama_tvl(
    conn: sqlite3.Connection,
    client,
    slugs: Iterable[str],
    run_id: str,
    chain_keys: Sequence[str] = DEFAULT_CHAIN_KEYS,
) -> dict[str, Any]:
    """Upsert one protocol_tvl_daily row per protocol for the latest reported day."""
    slugs = list(slugs)
    fetched = client.get_protocols(slugs)
    failed = sorted(slug for slug, payload in fetched.items() if payload is None)

    points: dict[str, tuple[str, float | None]] = {}
    for slug in slugs:
        protocol = fetched.get(slug)
        if not protocol:
            continue
        point = latest_chain_point(protocol, chain_keys)
        if point is None:
            logger.info("Protocol %s has no usable chain series", slug)
            continue
        points[str(protocol.get("name") or slug)] = point

    if not points:
        return {"fetched": len(slugs) - len(failed), "failed": failed, "day": None, "upserted": 0, "errors": 0}

    latest_day = max(day for day, _ in points.values())
    day_values = {name: tvl for name, (day, tvl) in points.items() if day == latest_day}
    total = sum(tvl for tvl in day_values.values() if tvl is not None)

    upserted = 0
    errors = 0
    for name, tvl in sorted(day_values.items()):
        record = {
            "day": latest_day,
            "protocol_name": name,
            "daily_tvl": tvl,
            "total_daily_tvl": total,
            "execution_id": run_id,
            "query_id": None,
        }
        try:
            store.upsert_normalized(conn, "protocol_tvl_daily", record)
            upserted += 1
        except sqlite3.Error as exc:
            errors += 1
            logger.error("Failed to store TVL for %s: %s", name, exc)
    logger.info("Llama TVL %s: %s protocols, total %.2f, %s fetch failures", latest_day, upserted, total, len(failed))
    return {
        "fetched": len(slugs) - len(failed),
        "failed": failed,
        "day": latest_day,
        "upserted": upserted,
        "total_tvl": total,
        "errors": errors,
    }


# DeFiLlama revenue


def revenue_series(payload: dict[str, Any], series: str) -> list[dict[str, Any]]:
    by_day: dict[str, float] = {}
    chart = payload.get("totalDataChartBreakdown")
    for entry in chart if isinstance(chart, list) else []:
        if not isinstance(entry, (list, tuple)) or len(entry) < 2:
            continue
        day = utc_day(entry[0])
        if day is None:
            continue
        revenue = 0.0
        breakdown = entry[1] if isinstance(entry[1], dict) else {}
        for chain_values in breakdown.values():
            if isinstance(chain_values, dict):
                revenue += parse_float(chain_values.get(series)) or 0.0
        by_day[day] = revenue
    return [{"day": day, "revenue": by_day[day]} for day in sorted(by_day)]


def with_annualized(rows: list[dict[str, Any]], window: int = REVENUE_WINDOW_DAYS) -> list[dict[str, Any]]:
    """Attach round(trailing mean * 365) once `window` days are available, else None."""
    result = []
    for index, row in enumerate(rows):
        trailing = rows[max(0, index - window + 1) : index + 1]
        annualized = None
        if len(trailing) == window:
            annualized = round(sum(item["revenue"] for item in trailing) / window * 365)
        result.append({**row, "annualized_revenue": annualized})
    return result


def sync_llama_revenue(
    conn: sqlite3.Connection,
    client,
    run_id: str,
    protocol: str = "Hyperliquid",
    series: str = "Hyperliquid Spot Orderbook",
) -> dict[str, Any]:
    payload = client.get_fees_summary(protocol)
    rows = with_annualized(revenue_series(payload, series))
    upserted = 0
    errors = 0
    for row in rows:
        record = {**row, "execution_id": run_id, "query_id": LLAMA_REVENUE_QUERY_ID}
        try:
            store.upsert_normalized(conn, "daily_revenue", record)
            upserted += 1
        except sqlite3.Error as exc:
            errors += 1
            logger.error("Failed to store revenue for %s: %s", row["day"], exc)
    logger.info("Llama revenue: %s days upserted, %s errors", upserted, errors)
    return {
        "days": len(rows),
        "upserted": upserted,
        "errors": errors,
        "first_day": rows[0]["day"] if rows else None,
        "last_day": rows[-1]["day"] if rows else None,
    }


# GeckoTerminal trending pools


def extract_address(gecko_token_id: str) -> str | None:
    """`hyperevm_0xABC...` -> `0xabc...`; None when no hex address can be found."""
    if not isinstance(gecko_token_id, str) or not gecko_token_id:
        return None
    candidate = gecko_token_id.split("_")[-1].lower()
    if ADDRESS_RE.match(candidate):
        return candidate
    return None


def _included_token(token_id: str, included: Iterable[dict[str, Any]]) -> dict[str, Any] | None:
    for item in included:
        if isinstance(item, dict) and item.get("type") == "token" and item.get("id") == token_id:
            return item
    return None


def pool_metric(attributes: dict[str, Any]) -> dict[str, Any]:
    return {
        "price_usd": parse_float(attributes.get("base_token_price_usd")),
        "market_cap": parse_float(attributes.get("market_cap_usd")),
        "fdv": parse_float(attributes.get("fdv_usd")),
        "volume_24h": parse_float(_dig(attributes, "volume_usd", "h24")),
        "liquidity_usd": parse_float(attributes.get("reserve_in_usd")),
        "price_change_30m": parse_float(_dig(attributes, "price_change_percentage", "m30")),
        "price_change_24h": parse_float(_dig(attributes, "price_change_percentage", "h24")),
    }


def _well_formed(pool: dict[str, Any]) -> bool:
    attributes = pool.get("attributes")
    if pool.get("type") != "pool" or not isinstance(attributes, dict) or not attributes.get("address"):
        return False
    if not isinstance(pool.get("relationships"), dict):
        return False
    for field in ("volume_usd", "price_change_percentage"):
        if attributes.get(field) is not None and not isinstance(attributes[field], dict):
            return False
    return isinstance(_dig(pool, "relationships", "base_token", "data", "id"), str)


def _process_pool(
    conn: sqlite3.Connection,
    pool: dict[str, Any],
    included: list[dict[str, Any]],
    thresholds: dict[str, Any],
    config: GeckoConfig,
    now: str,
) -> str:
    if not _well_formed(pool):
        return "malformed"
    attributes = pool["attributes"]
    relationships = pool["relationships"]
    token = _included_token(_dig(relationships, "base_token", "data", "id"), included)
    if token is None:
        return "malformed"

    metric = pool_metric(attributes)
    volume = metric["volume_24h"] or 0.0
    liquidity = metric["liquidity_usd"] or 0.0
    if volume < config.min_volume_usd or liquidity < config.min_liquidity_usd:
        return "below_minimums"

    address = extract_address(token.get("id"))
    if address is None:
        logger.warning("Pool %s has no usable base token address (%s)", pool.get("id"), token.get("id"))
        return "failed"

    existing = store.fetch_token(conn, address)
    if existing is not None and (not existing["enabled"] or existing["is_hidden"]):
        return "skipped_manual"

    if existing is None:
        token_attributes = token.get("attributes") if isinstance(token.get("attributes"), dict) else {}
        dex_id = _dig(relationships, "dex", "data", "id")
        store.insert_token(
            conn,
            {
                "contract_address": address,
                "gecko_id": token.get("id"),
                "name": token_attributes.get("name"),
                "symbol": token_attributes.get("symbol"),
                "pair_address": attributes.get("address"),
                "pair_created_at": attributes.get("pool_created_at"),
                "dex_id": dex_id,
                "chain_id": config.network,
                "image_url": token_attributes.get("image_url") or FALLBACK_IMAGE_URL.format(address=address),
                **compute_flags(metric, thresholds),
            },
            now=now,
            commit=False,
        )
        status = "inserted"
    else:
        store.touch_token(conn, address, now=now, commit=False)
        status = "refreshed"
    store.insert_token_metric(conn, address, metric, recorded_at=now, commit=False)
    conn.commit()
    return status


def sync_geckoterminal(
    conn: sqlite3.Connection,
    client,
    thresholds: dict[str, Any],
    config: GeckoConfig,
    sleep: Callable[[float], None] = time.sleep,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Discover tokens from trending pools and append one snapshot per kept pool.

    A page that cannot be fetched (rate limit exhausted, HTTP error, bad
    JSON) is skipped. Enabled tokens not refreshed for `inactive_days` are
    disabled at the end of the run.
    """
    now = now or utc_now()
    now_iso = to_iso(now)
    counts = {
        "pages_attempted": 0,
        "pages_ok": 0,
        "pages_skipped": 0,
        "inserted": 0,
        "refreshed": 0,
        "skipped_manual": 0,
        "below_minimums": 0,
        "malformed": 0,
        "failed": 0,
        "metrics_inserted": 0,
        "disabled_inactive": 0,
    }
    for page in range(1, config.max_pages + 1):
        counts["pages_attempted"] += 1
        try:
            payload = client.trending_pools(page)
        except ProviderUnavailable as exc:
            counts["pages_skipped"] += 1
            logger.warning("Skipping trending pools page %s: %s", page, exc)
        else:
            counts["pages_ok"] += 1
            included = [item for item in payload.get("included") or [] if isinstance(item, dict)]
            for pool in payload["data"]:
                if not isinstance(pool, dict):
                    counts["malformed"] += 1
                    continue
                try:
                    status = _process_pool(conn, pool, included, thresholds, config, now_iso)
                except sqlite3.Error as exc:
                    conn.rollback()
                    logger.error("Failed to store pool %s: %s", pool.get("id"), exc)
                    status = "failed"
                counts[status] += 1
                if status in ("inserted", "refreshed"):
                    counts["metrics_inserted"] += 1
        if page < config.max_pages and config.inter_page_delay_s > 0:
            sleep(config.inter_page_delay_s)

    cutoff = to_iso(now - timedelta(days=config.inactive_days))
    try:
        disabled = store.disable_inactive_tokens(conn, cutoff, now=now_iso)
    except sqlite3.Error as exc:
        logger.error("Inactive token sweep failed: %s", exc)
        counts["failed"] += 1
    else:
        counts["disabled_inactive"] = len(disabled)
        if disabled:
            logger.info("Disabled %s inactive tokens", len(disabled))
    logger.info(
        "GeckoTerminal sync: pages ok=%s skipped=%s, inserted=%s refreshed=%s metrics=%s",
        counts["pages_ok"],
        counts["pages_skipped"],
        counts["inserted"],
        counts["refreshed"],
        counts["metrics_inserted"],
    )
    return counts


# CoinMarketCap


def _rounded(value: float | None) -> int | None:
    return round(value) if value is not None else None


def sync_cmc_quote(conn: sqlite3.Connection, client, symbol: str, now: datetime | None = None) -> dict[str, Any]:
    quote = client.get_usd_quote(symbol)
    record = {
        "symbol": symbol,
        "price": parse_float(quote.get("price")),
        "market_cap": _rounded(parse_float(quote.get("market_cap"))),
        "percent_change_24h": parse_float(quote.get("percent_change_24h")),
        "fully_diluted_market_cap": _rounded(parse_float(quote.get("fully_diluted_market_cap"))),
        "volume_24h": _rounded(parse_float(quote.get("volume_24h"))),
        "volume_change_24h": parse_float(quote.get("volume_change_24h")),
        "synced_at": to_iso(now or utc_now()),
    }
    record["id"] = store.insert_cmc_quote(conn, record)
    logger.info("%s quote stored: price=%s market_cap=%s", symbol, record["price"], record["market_cap"])
    return record
