from __future__ import annotations

import sqlite3

from hyperstats.config import ThresholdDefaults
from hyperstats.db import store
from hyperstats.pipeline.thresholds import (
    compute_flags,
    evaluate_token_flags,
    get_filter_thresholds,
    refresh_token_flags,
)

THRESHOLDS = {"min_liquidity_usd": 5000, "min_volume_usd": 1000}
ADDRESS = "0x" + "ab" * 20


def _setup_conn() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    store.init_db(conn)
    return conn


def _snapshot(conn, liquidity: float | None, volume: float | None, at: str) -> None:
    store.insert_token_metric(conn, ADDRESS, {"liquidity_usd": liquidity, "volume_24h": volume}, recorded_at=at)


def test_flags_follow_the_latest_snapshot() -> None:
    conn = _setup_conn()
    store.insert_token(conn, {"contract_address": ADDRESS}, now="2025-06-01T00:00:00+00:00")
    _snapshot(conn, 4000, 2000, "2025-06-01T01:00:00+00:00")

    result = evaluate_token_flags(conn, ADDRESS, THRESHOLDS, now="2025-06-01T02:00:00+00:00")

    assert result["changed"] == {"low_liquidity": True}
    token = store.fetch_token(conn, ADDRESS)
    assert token["low_liquidity"] == 1
    assert token["low_volume"] == 0

    _snapshot(conn, 6000, 2000, "2025-06-01T03:00:00+00:00")
    result = evaluate_token_flags(conn, ADDRESS, THRESHOLDS, now="2025-06-01T04:00:00+00:00")

    assert result["changed"] == {"low_liquidity": False}
    token = store.fetch_token(conn, ADDRESS)
    assert token["low_liquidity"] == 0
    assert token["updated_at"] == "2025-06-01T04:00:00+00:00"


def test_unchanged_flags_only_refresh_updated_at() -> None:
    conn = _setup_conn()
    store.insert_token(conn, {"contract_address": ADDRESS}, now="2025-06-01T00:00:00+00:00")
    _snapshot(conn, 6000, 2000, "2025-06-01T01:00:00+00:00")

    result = evaluate_token_flags(conn, ADDRESS, THRESHOLDS, now="2025-06-01T02:00:00+00:00")

    assert result["changed"] == {}
    assert store.fetch_token(conn, ADDRESS)["updated_at"] == "2025-06-01T02:00:00+00:00"


def test_token_without_snapshot_keeps_its_flags() -> None:
    conn = _setup_conn()
    store.insert_token(conn, {"contract_address": ADDRESS, "low_volume": True}, now="2025-06-01T00:00:00+00:00")

    result = evaluate_token_flags(conn, ADDRESS, THRESHOLDS, now="2025-06-01T02:00:00+00:00")

    assert result == {"contract_address": ADDRESS, "snapshot": False, "changed": {}}
    token = store.fetch_token(conn, ADDRESS)
    assert token["low_volume"] == 1
    assert token["updated_at"] == "2025-06-01T02:00:00+00:00"


def test_unknown_token_returns_none() -> None:
    conn = _setup_conn()
    assert evaluate_token_flags(conn, ADDRESS, THRESHOLDS) is None


def test_missing_measures_count_as_zero() -> None:
    assert compute_flags({"liquidity_usd": None, "volume_24h": None}, THRESHOLDS) == {
        "low_liquidity": True,
        "low_volume": True,
    }
    assert compute_flags(None, {"min_liquidity_usd": 0, "min_volume_usd": 0}) == {
        "low_liquidity": False,
        "low_volume": False,
    }


def test_thresholds_fall_back_to_defaults() -> None:
    conn = _setup_conn()
    defaults = ThresholdDefaults(min_liquidity_usd=10000, min_volume_usd=1000)

    assert get_filter_thresholds(conn, defaults) == {
        "min_liquidity_usd": 10000,
        "min_volume_usd": 1000,
        "source": "default",
    }

    store.set_filter_thresholds(conn, 2500, 300)
    assert get_filter_thresholds(conn, defaults) == {
        "min_liquidity_usd": 2500,
        "min_volume_usd": 300,
        "source": "db",
    }


def test_unreadable_threshold_table_uses_defaults() -> None:
    conn = _setup_conn()
    conn.execute("DROP TABLE filter_thresholds")

    result = get_filter_thresholds(conn, ThresholdDefaults())

    assert result["source"] == "default"


def test_refresh_checks_every_enabled_token() -> None:
    conn = _setup_conn()
    other = "0x" + "cd" * 20
    disabled = "0x" + "ef" * 20
    store.insert_token(conn, {"contract_address": ADDRESS})
    store.insert_token(conn, {"contract_address": other})
    store.insert_token(conn, {"contract_address": disabled, "enabled": False})
    _snapshot(conn, 100, 100, "2025-06-01T01:00:00+00:00")

    summary = refresh_token_flags(conn, THRESHOLDS)

    assert summary["checked"] == 2
    assert summary["changed"] == 1
    assert summary["errors"] == 0
