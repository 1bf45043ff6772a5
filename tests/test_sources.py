from __future__ import annotations

from datetime import datetime, timedelta, timezone

from conftest import FakeResponse, FakeSession
from hyperstats.api.geckoterminal import GeckoTerminalClient
from hyperstats.config import GeckoConfig, RateLimitConfig
from hyperstats.db import store
from hyperstats.pipeline.sources import (
    LLAMA_REVENUE_QUERY_ID,
    extract_address,
    revenue_series,
    sync_cmc_quote,
    sync_geckoterminal,
    sync_llama_revenue,
    sync_llama_tvl,
    with_annualized,
)
from hyperstats.utils.time import to_iso

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
JUNE_1 = 1748736000
DAY = 86400


class FakeLlama:
    def __init__(self, protocols=None, fees=None) -> None:
        self.protocols = protocols or {}
        self.fees = fees or {}

    def get_protocols(self, slugs):
        return {slug: self.protocols.get(slug) for slug in slugs}

    def get_fees_summary(self, protocol):
        return self.fees


class FakeCmc:
    def __init__(self, quote) -> None:
        self.quote = quote

    def get_usd_quote(self, symbol):
        return self.quote


def _protocol(name: str, chain: str, date: int, tvl: float) -> dict:
    return {"name": name, "chainTvls": {chain: {"tvl": [{"date": date - DAY, "totalLiquidityUSD": 1}, {"date": date, "totalLiquidityUSD": tvl}]}}}


def test_llama_tvl_keeps_latest_day_and_reports_failures(conn) -> None:
    client = FakeLlama(
        protocols={
            "felix": _protocol("Felix", "Hyperliquid L1", JUNE_1, 100),
            "hyperlend": _protocol("HyperLend", "Hyperliquid", JUNE_1, 50),
            "laggard": _protocol("Laggard", "Hyperliquid L1", JUNE_1 - DAY, 999),
            "other-chain": _protocol("Elsewhere", "Ethereum", JUNE_1, 5),
        }
    )

    result = sync_llama_tvl(conn, client, ["felix", "hyperlend", "laggard", "other-chain", "broken"], "run_1")

    assert result["day"] == "2025-06-01"
    assert result["failed"] == ["broken"]
    assert result["upserted"] == 2
    assert result["total_tvl"] == 150
    rows = store.fetch_normalized(conn, "protocol_tvl_daily")
    assert [(row["protocol_name"], row["daily_tvl"], row["total_daily_tvl"]) for row in rows] == [
        ("Felix", 100, 150),
        ("HyperLend", 50, 150),
    ]
    assert rows[0]["execution_id"] == "run_1"
    assert rows[0]["query_id"] is None


def test_llama_tvl_rerun_overwrites_the_same_day(conn) -> None:
    client = FakeLlama(protocols={"felix": _protocol("Felix", "Hyperliquid L1", JUNE_1, 100)})
    sync_llama_tvl(conn, client, ["felix"], "run_1")
    client.protocols["felix"] = _protocol("Felix", "Hyperliquid L1", JUNE_1, 120)

    sync_llama_tvl(conn, client, ["felix"], "run_2")

    rows = store.fetch_normalized(conn, "protocol_tvl_daily")
    assert len(rows) == 1
    assert rows[0]["daily_tvl"] == 120


def test_revenue_series_sums_named_series_across_chains() -> None:
    payload = {
        "totalDataChartBreakdown": [
            [JUNE_1, {"hyperliquid": {"Hyperliquid Spot Orderbook": 10, "Hyperliquid Perps": 99}, "hyperevm": {"Hyperliquid Spot Orderbook": 5}}],
            [JUNE_1 - DAY, {"hyperliquid": {"Hyperliquid Perps": 1}}],
            ["garbage"],
        ]
    }

    assert revenue_series(payload, "Hyperliquid Spot Orderbook") == [
        {"day": "2025-05-31", "revenue": 0.0},
        {"day": "2025-06-01", "revenue": 15.0},
    ]


def test_annualized_revenue_needs_a_full_window() -> None:
    rows = [{"day": f"2025-05-{day:02d}", "revenue": float(day)} for day in range(1, 9)]

    result = with_annualized(rows)

    assert [row["annualized_revenue"] for row in result[:6]] == [None] * 6
    assert result[6]["annualized_revenue"] == 1460
    assert result[7]["annualized_revenue"] == 1825


def test_llama_revenue_rows_are_tagged_with_sentinel_query(conn) -> None:
    chart = [
        [JUNE_1 - (7 - index) * DAY, {"hyperliquid": {"Hyperliquid Spot Orderbook": index + 1}}]
        for index in range(8)
    ]
    client = FakeLlama(fees={"totalDataChartBreakdown": chart})

    result = sync_llama_revenue(conn, client, "run_1")

    assert result["days"] == 8
    assert result["upserted"] == 8
    assert result["first_day"] == "2025-05-25"
    assert result["last_day"] == "2025-06-01"
    rows = store.fetch_normalized(conn, "daily_revenue")
    assert {row["query_id"] for row in rows} == {LLAMA_REVENUE_QUERY_ID}
    assert rows[-1]["annualized_revenue"] == 1825
    assert rows[0]["annualized_revenue"] is None


def test_extract_address() -> None:
    assert extract_address("hyperevm_0x" + "AB" * 20) == "0x" + "ab" * 20
    assert extract_address("hyperevm_native") is None
    assert extract_address("") is None


TOKEN_NEW = "0x" + "aa" * 20
TOKEN_SEEN = "0x" + "bb" * 20
TOKEN_MANUAL = "0x" + "cc" * 20
TOKEN_STALE = "0x" + "dd" * 20


def _pool(index: int, token_address: str, volume: float, liquidity: float) -> dict:
    return {
        "id": f"hyperevm_pool{index}",
        "type": "pool",
        "attributes": {
            "address": f"0xpool{index}",
            "base_token_price_usd": "1.5",
            "market_cap_usd": None,
            "fdv_usd": "1000000",
            "volume_usd": {"h24": str(volume)},
            "reserve_in_usd": str(liquidity),
            "price_change_percentage": {"m30": "1.2", "h24": "-3"},
            "pool_created_at": "2025-05-20T00:00:00Z",
        },
        "relationships": {
            "base_token": {"data": {"id": f"hyperevm_{token_address}", "type": "token"}},
            "dex": {"data": {"id": "hyperswap", "type": "dex"}},
        },
    }


def _included(token_address: str, symbol: str) -> dict:
    return {"id": f"hyperevm_{token_address}", "type": "token", "attributes": {"name": symbol.title(), "symbol": symbol, "image_url": None}}


def _gecko_routes() -> dict[int, list]:
    page_one = {
        "data": [
            _pool(1, TOKEN_NEW, 5000, 20000),
            _pool(2, TOKEN_SEEN, 3000, 8000),
            _pool(3, TOKEN_MANUAL, 3000, 8000),
            _pool(4, TOKEN_NEW, 500, 20000),
            {"type": "pool", "attributes": {}},
        ],
        "included": [
            _included(TOKEN_NEW, "NEW"),
            _included(TOKEN_SEEN, "SEEN"),
            _included(TOKEN_MANUAL, "MAN"),
        ],
    }
    return {
        1: [FakeResponse(200, page_one)],
        2: [
            FakeResponse(429, headers={"Retry-After": "500"}, text="slow down"),
            FakeResponse(429, text="slow down"),
            FakeResponse(429, headers={"Retry-After": "soon"}, text="slow down"),
            FakeResponse(429, text="slow down"),
        ],
        3: [FakeResponse(500, text="upstream broke")],
    }


def test_geckoterminal_sync_end_to_end(conn) -> None:
    old = to_iso(NOW - timedelta(days=10))
    store.insert_token(conn, {"contract_address": TOKEN_SEEN, "symbol": "SEEN"}, now=old)
    store.insert_token(conn, {"contract_address": TOKEN_MANUAL, "symbol": "MAN", "enabled": False}, now=old)
    store.insert_token(conn, {"contract_address": TOKEN_STALE, "symbol": "OLD"}, now=old)

    routes = _gecko_routes()
    session = FakeSession(lambda method, url, params: routes[params["page"]].pop(0))
    sleeps: list[float] = []
    config = GeckoConfig(max_pages=3, inter_page_delay_s=15)
    client = GeckoTerminalClient(config, RateLimitConfig(), session=session, sleep=sleeps.append)
    thresholds = {"min_liquidity_usd": 10000, "min_volume_usd": 1000}

    counts = sync_geckoterminal(conn, client, thresholds, config, sleep=sleeps.append, now=NOW)

    assert counts["pages_attempted"] == 3
    assert counts["pages_ok"] == 1
    assert counts["pages_skipped"] == 2
    assert counts["inserted"] == 1
    assert counts["refreshed"] == 1
    assert counts["skipped_manual"] == 1
    assert counts["below_minimums"] == 1
    assert counts["malformed"] == 1
    assert counts["metrics_inserted"] == 2
    assert counts["disabled_inactive"] == 1
    # 429 waits are capped at 180s and default to 60s; pages are 15s apart
    assert sleeps == [15, 180, 60, 60, 15]
    assert len([call for call in session.calls if call["params"]["page"] == 2]) == 4
    assert client.rate_limited_count == 4

    new_token = store.fetch_token(conn, TOKEN_NEW)
    assert new_token["symbol"] == "NEW"
    assert new_token["dex_id"] == "hyperswap"
    assert new_token["chain_id"] == "hyperevm"
    assert new_token["image_url"].endswith(f"{TOKEN_NEW}.png")
    assert new_token["low_liquidity"] == 0
    seen = store.fetch_token(conn, TOKEN_SEEN)
    assert seen["enabled"] == 1
    assert seen["updated_at"] == to_iso(NOW)
    assert store.fetch_token(conn, TOKEN_STALE)["enabled"] == 0
    assert store.fetch_latest_metric(conn, TOKEN_MANUAL) is None

    metric = store.fetch_latest_metric(conn, TOKEN_SEEN)
    assert metric["liquidity_usd"] == 8000
    assert metric["volume_24h"] == 3000
    assert metric["price_change_30m"] == 1.2
    assert metric["market_cap"] is None


def test_cmc_quote_rounds_large_figures(conn) -> None:
    client = FakeCmc(
        {
            "price": 41.234,
            "market_cap": 13800000000.6,
            "fully_diluted_market_cap": 41000000000.4,
            "volume_24h": 250000000.7,
            "percent_change_24h": 2.5,
            "volume_change_24h": -10.1,
        }
    )

    record = sync_cmc_quote(conn, client, "HYPE", now=NOW)

    assert record["price"] == 41.234
    assert record["market_cap"] == 13800000001
    assert record["fully_diluted_market_cap"] == 41000000000
    assert record["volume_24h"] == 250000001
    assert record["synced_at"] == to_iso(NOW)
    assert store.count_rows(conn, "cmc_quotes", "symbol = ?", ("HYPE",)) == 1


class FakeGecko:
    def __init__(self, pages) -> None:
        self.pages = pages

    def trending_pools(self, page):
        return self.pages[page]


def test_pools_with_wrongly_shaped_fields_do_not_stop_the_page(conn) -> None:
    flat_volume = _pool(1, TOKEN_SEEN, 5000, 20000)
    flat_volume["attributes"]["volume_usd"] = "123456"
    flat_changes = _pool(2, TOKEN_SEEN, 5000, 20000)
    flat_changes["attributes"]["price_change_percentage"] = ["1.2"]
    listed_relationships = _pool(3, TOKEN_SEEN, 5000, 20000)
    listed_relationships["relationships"] = [{"base_token": {}}]
    text_attributes = _pool(4, TOKEN_SEEN, 5000, 20000)
    text_attributes["attributes"] = "pool"
    odd_token = _included(TOKEN_NEW, "NEW")
    odd_token["attributes"] = None
    page = {
        "data": [flat_volume, flat_changes, listed_relationships, text_attributes, _pool(5, TOKEN_NEW, 5000, 20000)],
        "included": [odd_token, _included(TOKEN_SEEN, "SEEN")],
    }
    store.insert_token(conn, {"contract_address": TOKEN_STALE, "symbol": "OLD"}, now=to_iso(NOW - timedelta(days=10)))
    config = GeckoConfig(max_pages=1, inter_page_delay_s=0)
    thresholds = {"min_liquidity_usd": 10000, "min_volume_usd": 1000}

    counts = sync_geckoterminal(conn, FakeGecko({1: page}), thresholds, config, now=NOW)

    assert counts["malformed"] == 4
    assert counts["inserted"] == 1
    assert counts["metrics_inserted"] == 1
    assert counts["disabled_inactive"] == 1
    assert store.fetch_token(conn, TOKEN_NEW)["symbol"] is None
    assert store.fetch_token(conn, TOKEN_SEEN) is None


def test_llama_tvl_ignores_protocols_with_unexpected_shapes(conn) -> None:
    client = FakeLlama(
        protocols={
            "listed": {"name": "Listed", "chainTvls": [{"tvl": []}]},
            "flat-point": {"name": "Flat", "chainTvls": {"Hyperliquid L1": {"tvl": [JUNE_1]}}},
            "flat-chain": {"name": "Chain", "chainTvls": {"Hyperliquid L1": "n/a"}},
            "felix": _protocol("Felix", "Hyperliquid L1", JUNE_1, 100),
        }
    )

    result = sync_llama_tvl(conn, client, ["listed", "flat-point", "flat-chain", "felix"], "run_1")

    assert result["upserted"] == 1
    assert [row["protocol_name"] for row in store.fetch_normalized(conn, "protocol_tvl_daily")] == ["Felix"]


def test_revenue_series_tolerates_a_non_list_chart() -> None:
    assert revenue_series({"totalDataChartBreakdown": {"oops": 1}}, "Hyperliquid Spot Orderbook") == []
